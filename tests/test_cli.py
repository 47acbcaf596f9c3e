import os, sys, json, tempfile, shutil

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from cw2pb_core import ProjectStore, EXIT_CONFIG_ERROR, EXIT_SUCCESS  # type: ignore
from cw2pb_pipeline import build_report, headless_main, write_report  # type: ignore
import cw2pb  # type: ignore


def _write(path, text):
    with open(path, 'w', encoding='utf-8') as f:
        f.write(text)
    return path


def test_print_repro_outputs_command(capsys):
    tmp = tempfile.mkdtemp(prefix='cw2pb_cli_')
    try:
        rc = headless_main(['--url', 'https://e.test', '--dest', tmp, '--format', 'ghl', '--no-browser', '--print-repro'])
        assert rc == EXIT_SUCCESS
        out = capsys.readouterr().out.strip()
        assert out == f'cw2pb --url=https://e.test --dest={tmp} --format=ghl --no-browser'
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_dry_run_plain_and_json(capsys):
    tmp = tempfile.mkdtemp(prefix='cw2pb_cli_')
    try:
        rc = headless_main(['--url', 'https://e.test', '--dest', tmp, '--no-browser', '--format', 'ghl', '--dry-run'])
        assert rc == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert '[dry-run] Plan summary:' in out
        assert '  - capture: static' in out

        rc = headless_main(['--url', 'https://e.test', '--dest', tmp, '--no-browser', '--dry-run', '--json-logs',
                            '--format', 'gutenberg,divi'])
        assert rc == EXIT_SUCCESS
        plan = json.loads(capsys.readouterr().out)['dry_run_plan']
        assert plan['formats'] == ['gutenberg', 'divi']
        assert plan['dest'] == tmp
        assert plan['issues'] is None
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_dry_run_unknown_format_is_config_error(capsys):
    tmp = tempfile.mkdtemp(prefix='cw2pb_cli_')
    try:
        rc = headless_main(['--url', 'https://e.test', '--dest', tmp, '--no-browser', '--format', 'wix', '--dry-run'])
        assert rc == EXIT_CONFIG_ERROR
        assert 'unknown formats: wix' in capsys.readouterr().out
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_config_file_merges_into_repro(capsys):
    tmp = tempfile.mkdtemp(prefix='cw2pb_cfgmerge_')
    try:
        cfg = _write(os.path.join(tmp, 'conf.json'),
                     json.dumps({'fetch_retries': 5, 'no_browser': True, 'responsive': True}))
        rc = headless_main(['--url', 'https://e.test', '--dest', tmp, '--config', cfg, '--print-repro'])
        assert rc == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert '--fetch-retries=5' in out and '--no-browser' in out and '--responsive' in out
        assert '--config' not in out
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_cli_flag_wins_over_config(capsys):
    tmp = tempfile.mkdtemp(prefix='cw2pb_cfgmerge_')
    try:
        cfg = _write(os.path.join(tmp, 'conf.yaml'), 'fetch-retries: 2\nno-browser: true\n')
        rc = headless_main(['--url', 'https://e.test', '--dest', tmp, '--config', cfg, '--fetch-retries', '7',
                            '--print-repro'])
        assert rc == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert '--fetch-retries=7' in out and '--no-browser' in out
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_bad_config_is_config_error(capsys):
    tmp = tempfile.mkdtemp(prefix='cw2pb_cfgbad_')
    try:
        bad_value = _write(os.path.join(tmp, 'value.json'), json.dumps({'fetch_retries': 'x'}))
        assert headless_main(['--url', 'https://e.test', '--dest', tmp, '--config', bad_value, '--print-repro']) == EXIT_CONFIG_ERROR
        bad_json = _write(os.path.join(tmp, 'broken.json'), '{"fetch_retries": ')
        assert headless_main(['--url', 'https://e.test', '--dest', tmp, '--config', bad_json, '--print-repro']) == EXIT_CONFIG_ERROR
        bad_yaml = _write(os.path.join(tmp, 'broken.yml'), 'formats: [ghl, divi\n')
        assert headless_main(['--url', 'https://e.test', '--dest', tmp, '--config', bad_yaml, '--print-repro']) == EXIT_CONFIG_ERROR
        assert '[config] cannot read' in capsys.readouterr().out
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_report_json_and_markdown():
    tmp = tempfile.mkdtemp(prefix='cw2pb_rep_')
    try:
        project = ProjectStore().create('https://e.test/')
        project.status = 'failed'
        project.failure_reason = 'origin returned HTTP 500'
        project.conversion_errors = {'wix': 'unsupported target format: wix'}
        summary = build_report(project, 12, ['cw2pb', '--url=https://e.test/', '--dest=out'])
        assert summary['exit_code'] == 12
        assert summary['score'] is None
        assert summary['assets'] == 0

        json_path = os.path.join(tmp, 'capture_report.json')
        write_report(json_path, summary, 'json')
        with open(json_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        assert data['url'] == 'https://e.test/'
        assert data['reproduce_command'][0] == 'cw2pb'

        md_path = os.path.join(tmp, 'capture_report.md')
        write_report(md_path, summary, 'md')
        with open(md_path, 'r', encoding='utf-8') as f:
            text = f.read()
        assert text.startswith('# Capture Report')
        assert '## Overview' in text and 'URL: https://e.test/' in text
        assert 'Failure: origin returned HTTP 500' in text
        assert '- wix: failed (unsupported target format: wix)' in text
        assert 'cw2pb --url=https://e.test/ --dest=out' in text
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def test_dispatcher_hands_off_to_headless(capsys):
    assert cw2pb.main(['--url', 'https://e.test', '--dest', 'out', '--print-repro']) == EXIT_SUCCESS
    assert capsys.readouterr().out.strip() == 'cw2pb --url=https://e.test --dest=out'
