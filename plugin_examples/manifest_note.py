"""Example plugin: append a custom note into project.json.

Demonstrates the `finalize` hook. Adds/merges a `customNotes` list in the
manifest (creating it if missing) so downstream tooling can detect plugin
contributions.
"""
from datetime import datetime, timezone


def finalize(manifest, context):
    notes = manifest.setdefault('customNotes', [])
    notes.append({
        'addedBy': 'manifest_note_plugin',
        'utc': datetime.now(timezone.utc).isoformat(),
        'message': f"{len(manifest.get('assets') or [])} assets captured for project {context.get('project_id')}",
    })
