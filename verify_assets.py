#!/usr/bin/env python3
"""Verify a capture folder against the project.json manifest written by cw2pb.

Usage:
  python verify_assets.py --manifest /path/to/project.json [--skip-refs]

Checks every `assets` and `optimizedAssets` entry (localPath relative to the
manifest folder) for presence and SHA256, then scans index.html and
optimized/index.html for resource references that point at local files which
do not exist. References still pointing at the source origin are listed but do
not fail verification (failed assets keep their original URL).

Exits 0 if everything matches, 3 on missing/mismatched files or broken
references, 2 if the manifest cannot be read.
"""
from __future__ import annotations
import argparse, json, os, sys, hashlib
from urllib.parse import urlsplit, unquote

from bs4 import BeautifulSoup

PAGES = ('index.html', 'optimized/index.html')
RESOURCE_ATTRS = (('img', 'src'), ('script', 'src'), ('source', 'src'), ('video', 'src'), ('video', 'poster'),
                  ('audio', 'src'), ('iframe', 'src'))


def hash_file(path: str) -> str | None:
    try:
        h = hashlib.sha256()
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(65536), b''):
                h.update(chunk)
        return h.hexdigest()
    except OSError:
        return None


def page_references(html: str) -> list[str]:
    """Resource URLs a browser would fetch when rendering the page."""
    soup = BeautifulSoup(html, 'html.parser')
    refs = []
    for tag, attr in RESOURCE_ATTRS:
        for el in soup.find_all(tag):
            if el.get(attr):
                refs.append(el[attr].strip())
    for el in soup.find_all('link', href=True):
        rel = [r.lower() for r in (el.get('rel') or [])]
        if 'stylesheet' in rel or 'icon' in rel or 'preload' in rel:
            refs.append(el['href'].strip())
    for el in soup.find_all(['img', 'source']):
        for cand in (el.get('srcset') or '').split(','):
            parts = cand.strip().split()
            if parts:
                refs.append(parts[0])
    return refs


def check_references(root: str, page: str, origin: str) -> tuple[list[str], list[str]]:
    path = os.path.join(root, page)
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            html = f.read()
    except OSError:
        return [], []
    base = os.path.dirname(path)
    broken, unrewritten = [], []
    for ref in page_references(html):
        try:
            parts = urlsplit(ref)
        except ValueError:
            continue
        if parts.scheme in ('data', 'blob', 'javascript', 'mailto', 'tel') or ref.startswith('#'):
            continue
        if parts.scheme or ref.startswith('//'):
            if origin and parts.netloc.lower() == origin:
                unrewritten.append(f"{page}: {ref}")
            continue
        if not parts.path:
            continue
        target = os.path.normpath(os.path.join(root if parts.path.startswith('/') else base,
                                               unquote(parts.path).lstrip('/')))
        if not os.path.exists(target):
            broken.append(f"{page}: {ref}")
    return broken, unrewritten


def _print_list(title: str, items: list[str]):
    if not items:
        return
    print(f'\n{title}:')
    for m in items[:25]:
        print('  ', m)
    if len(items) > 25:
        print(f"  ... (+{len(items)-25} more)")


def main(argv: list[str]) -> int:
    p = argparse.ArgumentParser(description='Verify captured assets and page references against project.json')
    p.add_argument('--manifest', required=True, help='Path to project.json')
    p.add_argument('--skip-refs', action='store_true', help='Only verify recorded files, not page references')
    args = p.parse_args(argv)

    if not os.path.exists(args.manifest):
        print(f"[error] Manifest not found: {args.manifest}")
        return 2
    try:
        with open(args.manifest, 'r', encoding='utf-8') as f:
            manifest = json.load(f)
    except (OSError, ValueError) as e:
        print(f"[error] Manifest unreadable: {e}")
        return 2
    entries = list(manifest.get('assets') or []) + list(manifest.get('optimizedAssets') or [])
    root = os.path.dirname(os.path.abspath(args.manifest))
    missing, mismatched = [], []
    ok = 0
    total = len(entries)
    if not total:
        print('[warn] No assets recorded in manifest; nothing to hash.')
    for idx, entry in enumerate(entries, 1):
        rel = entry.get('localPath') or ''
        path = os.path.join(root, rel)
        if not rel or not os.path.exists(path):
            missing.append(rel or '<no localPath>')
            continue
        actual = hash_file(path)
        expected = entry.get('sha256')
        if actual is None:
            missing.append(rel)
        elif expected and actual != expected:
            mismatched.append(rel)
        else:
            ok += 1
        if idx == 1 or idx == total or idx % 200 == 0:
            pct = int(idx * 100 / total)
            print(f"[verify] {idx}/{total} ({pct}%)")
    broken, unrewritten = [], []
    if not args.skip_refs:
        origin = urlsplit(manifest.get('source') or '').netloc.lower()
        for page in PAGES:
            b, u = check_references(root, page, origin)
            broken += b
            unrewritten += u
    print(f"[verify] OK={ok} Missing={len(missing)} Mismatched={len(mismatched)} Total={total}")
    if not args.skip_refs:
        print(f"[verify] BrokenRefs={len(broken)} OriginRefs={len(unrewritten)}")
    _print_list('Missing files', missing)
    _print_list('Mismatched files', mismatched)
    _print_list('Broken local references', broken)
    _print_list('References still pointing at the source origin', unrewritten)
    return 0 if (ok == total and not missing and not mismatched and not broken) else 3


if __name__ == '__main__':
    raise SystemExit(main(sys.argv[1:]))
