"""Example plugin: stamp a provenance banner on captured stylesheets and scripts

Demonstrates the `post_asset` hook. It runs once per stored asset, before the
bytes are hashed and written; returning bytes replaces the content, returning
None leaves it untouched.
"""
BANNER = "/* captured by cw2pb from {source} */\n"


def post_asset(rel_path, data, context):
    if not rel_path.lower().endswith(('.css', '.js')):
        return None
    banner = BANNER.format(source=context.get('source', 'unknown')).encode('utf-8')
    if data.startswith(banner):
        return None
    return banner + data
