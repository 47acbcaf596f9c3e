import os, sys, json, tempfile, shutil, unittest

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

import pytest

from cw2pb_core import (  # type: ignore
    CloneOptions, Settings, ValidationError, load_settings, validate_source_url, camel, snake, rgb_to_hex,
    PhaseTimeoutError, AssetFetchError, JobCancelled,
)


class TestCloneOptions(unittest.TestCase):
    def test_defaults(self):
        o = CloneOptions()
        self.assertTrue(o.include_assets)
        self.assertTrue(o.use_browser_automation)
        self.assertEqual(o.navigation_timeout_ms, 60000)
        self.assertEqual(o.target_formats, ())
        self.assertEqual(len(o.breakpoints), 7)

    def test_camel_and_snake_keys(self):
        o = CloneOptions.from_mapping({'useBrowserAutomation': False, 'fetch_retries': 1,
                                       'targetFormats': 'Gutenberg, divi', 'url': 'https://ignored.example'})
        self.assertFalse(o.use_browser_automation)
        self.assertEqual(o.fetch_retries, 1)
        self.assertEqual(o.target_formats, ('gutenberg', 'divi'))

    def test_string_booleans(self):
        self.assertFalse(CloneOptions.from_mapping({'includeAssets': 'no'}).include_assets)
        self.assertTrue(CloneOptions.from_mapping({'captureResponsive': 'true'}).capture_responsive)

    def test_malformed_values(self):
        with self.assertRaises(ValidationError):
            CloneOptions.from_mapping({'fetchRetries': 'many'})
        with self.assertRaises(ValidationError):
            CloneOptions.from_mapping({'includeAssets': 'maybe'})
        with self.assertRaises(ValidationError):
            CloneOptions.from_mapping({'assetFailureThreshold': 0})
        with self.assertRaises(ValidationError):
            CloneOptions.from_mapping({'breakpoints': [{'name': 'x'}]})

    def test_score_weights_must_sum_to_one(self):
        with self.assertRaises(ValidationError):
            CloneOptions.from_mapping({'scoreWeights': {'performance': 0.5, 'seo': 0.2}})
        o = CloneOptions.from_mapping({'scoreWeights': {'performance': 0.5, 'seo': 0.5}})
        self.assertEqual(dict(o.score_weights), {'performance': 0.5, 'seo': 0.5})

    def test_to_dict_uses_camel_case(self):
        d = CloneOptions(target_formats=('ghl',)).to_dict()
        self.assertIn('useBrowserAutomation', d)
        self.assertEqual(d['targetFormats'], ['ghl'])
        self.assertIsInstance(d['scoreWeights'], dict)
        self.assertEqual(d['breakpoints'][0].keys(), {'name', 'width', 'height'})


@pytest.mark.parametrize('raw,expected', [
    ('example.com', 'https://example.com'),
    ('http://example.com/a?b=1', 'http://example.com/a?b=1'),
    ('  https://example.com  ', 'https://example.com'),
])
def test_validate_source_url_accepts(raw, expected):
    assert validate_source_url(raw) == expected


@pytest.mark.parametrize('raw', ['', None, 'ftp://example.com', 'https://exa mple.com', 'https://'])
def test_validate_source_url_rejects(raw):
    with pytest.raises(ValidationError):
        validate_source_url(raw)


def test_name_helpers():
    assert camel('use_browser_automation') == 'useBrowserAutomation'
    assert snake('useBrowserAutomation') == 'use_browser_automation'
    assert rgb_to_hex('rgb(255, 0, 0)') == '#FF0000'
    assert rgb_to_hex('rgba(0, 0, 0, 0)') is None


def test_error_kinds():
    assert PhaseTimeoutError('styles took too long').message.startswith('timeout: ')
    assert PhaseTimeoutError('initial load timeout after 5ms').message == 'initial load timeout after 5ms'
    e = AssetFetchError('HTTP 404', url='https://x.test/a.png', status_code=404, attempts=1)
    assert not e.fatal and e.stage == 'extracting'
    assert e.to_dict() == {'error': 'AssetFetchError', 'message': 'HTTP 404'}
    assert JobCancelled('capturing').to_dict() == {'error': 'Cancelled', 'message': 'cancelled'}


class TestLoadSettings(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix='cw2pb_settings_')

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def test_defaults_without_config(self):
        s = load_settings(env={})
        self.assertEqual(s.port, Settings().port)
        self.assertEqual(s.max_browser_sessions, 2)

    def test_json_config_then_env_override(self):
        path = os.path.join(self.tempdir, 'cfg.json')
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({'maxBrowserSessions': 4, 'port': 7000, 'defaultOptions': {'useBrowserAutomation': False}}, f)
        s = load_settings(env={'CW2PB_CONFIG': path, 'CW2PB_PORT': '7100', 'CW2PB_JSON_LOGS': 'yes'})
        self.assertEqual(s.max_browser_sessions, 4)
        self.assertEqual(s.port, 7100)
        self.assertTrue(s.json_logs)
        self.assertEqual(s.default_options, {'useBrowserAutomation': False})

    def test_yaml_config(self):
        path = os.path.join(self.tempdir, 'cfg.yaml')
        with open(path, 'w', encoding='utf-8') as f:
            f.write('output_dir: /tmp/cw2pb-yaml\nlog_level: DEBUG\n')
        s = load_settings(config_path=path, env={})
        self.assertEqual(s.output_dir, '/tmp/cw2pb-yaml')
        self.assertEqual(s.log_level, 'DEBUG')

    def test_invalid_values(self):
        with self.assertRaises(ValidationError):
            load_settings(env={'CW2PB_PORT': 'eighty'})
        with self.assertRaises(ValidationError):
            load_settings(env={'CW2PB_MAX_BROWSER_SESSIONS': '0'})


if __name__ == '__main__':
    unittest.main()
