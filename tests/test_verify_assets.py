import os, sys, json, tempfile, shutil, hashlib, unittest

BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from cw2pb_pipeline import parse_verification_summary, run_verification  # type: ignore
import verify_assets  # type: ignore


class TestParseVerificationSummary(unittest.TestCase):
    def test_valid_line(self):
        txt = "noise\n[verify] OK=5 Missing=1 Mismatched=2 Total=8\nend"
        self.assertEqual(parse_verification_summary(txt), {'ok': 5, 'missing': 1, 'mismatched': 2, 'total': 8})

    def test_empty(self):
        self.assertEqual(parse_verification_summary(""), {'ok': None, 'missing': None, 'mismatched': None, 'total': None})

    def test_partial_noise(self):
        stats = parse_verification_summary("Some unrelated output\nStill nothing here")
        self.assertEqual(stats, {'ok': None, 'missing': None, 'mismatched': None, 'total': None})


class TestVerifyCapture(unittest.TestCase):
    def setUp(self):
        self.tempdir = tempfile.mkdtemp(prefix='cw2pb_verify_')
        self.files = {
            'index.html': b'<html><head><link rel="stylesheet" href="assets/css/abc-site.css"></head>'
                          b'<body><img src="assets/image/def-logo.png">'
                          b'<img src="https://example.com/missing.png"></body></html>',
            'assets/css/abc-site.css': b'body{color:red}',
            'assets/image/def-logo.png': b'\x89PNG\r\n\x1a\nfake',
            'optimized/index.html': b'<html><body><img src="assets/image/def-logo.png"></body></html>',
            'optimized/assets/image/def-logo.png': b'\x89PNG\r\n\x1a\nfake',
        }
        assets, optimized = [], []
        for rel, data in self.files.items():
            full = os.path.join(self.tempdir, rel)
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, 'wb') as f:
                f.write(data)
            entry = {'localPath': rel, 'sha256': hashlib.sha256(data).hexdigest(), 'byteSize': len(data)}
            (optimized if rel.startswith('optimized/') else assets).append(entry)
        self.manifest_path = os.path.join(self.tempdir, 'project.json')
        with open(self.manifest_path, 'w', encoding='utf-8') as mf:
            json.dump({'source': 'https://example.com/', 'assets': assets, 'optimizedAssets': optimized}, mf, indent=2)

    def tearDown(self):
        shutil.rmtree(self.tempdir, ignore_errors=True)

    def _write(self, rel, data):
        with open(os.path.join(self.tempdir, rel), 'wb') as f:
            f.write(data)

    def test_main_passes(self):
        self.assertEqual(verify_assets.main(['--manifest', self.manifest_path]), 0)

    def test_main_mismatch(self):
        self._write('assets/css/abc-site.css', b'body{color:blue}')
        self.assertEqual(verify_assets.main(['--manifest', self.manifest_path]), 3)

    def test_main_missing_manifest(self):
        self.assertEqual(verify_assets.main(['--manifest', os.path.join(self.tempdir, 'nope.json')]), 2)

    def test_broken_reference_fails_unless_skipped(self):
        self._write('index.html', self.files['index.html'].replace(b'def-logo.png', b'gone.png'))
        # keep the hash in sync so only the reference check can fail
        with open(self.manifest_path, 'r', encoding='utf-8') as mf:
            manifest = json.load(mf)
        with open(os.path.join(self.tempdir, 'index.html'), 'rb') as f:
            manifest['assets'][0]['sha256'] = hashlib.sha256(f.read()).hexdigest()
        with open(self.manifest_path, 'w', encoding='utf-8') as mf:
            json.dump(manifest, mf)
        self.assertEqual(verify_assets.main(['--manifest', self.manifest_path]), 3)
        self.assertEqual(verify_assets.main(['--manifest', self.manifest_path, '--skip-refs']), 0)

    def test_origin_references_are_listed_not_failed(self):
        broken, origin_refs = verify_assets.check_references(self.tempdir, 'index.html', 'example.com')
        self.assertEqual(broken, [])
        self.assertEqual(origin_refs, ['index.html: https://example.com/missing.png'])

    def test_run_verification_records_result(self):
        lines = []
        passed, stats = run_verification(self.manifest_path, output_cb=lines.append)
        self.assertTrue(passed)
        self.assertEqual(stats, {'ok': 5, 'missing': 0, 'mismatched': 0, 'total': 5})
        self.assertTrue(any(l.startswith('[verify] OK=5') for l in lines))
        with open(self.manifest_path, 'r', encoding='utf-8') as mf:
            self.assertEqual(json.load(mf)['verification']['status'], 'passed')

    def test_run_verification_missing_file(self):
        os.remove(os.path.join(self.tempdir, 'assets/image/def-logo.png'))
        passed, stats = run_verification(self.manifest_path)
        self.assertFalse(passed)
        self.assertEqual(stats['missing'], 1)
        self.assertEqual(stats['total'], 5)

    def test_run_verification_without_manifest(self):
        passed, stats = run_verification(os.path.join(self.tempdir, 'absent.json'))
        self.assertFalse(passed)
        self.assertIsNone(stats['ok'])


if __name__ == '__main__':
    unittest.main()
