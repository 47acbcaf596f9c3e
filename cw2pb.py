"""cw2pb entrypoint (minimal dispatcher only).

Core implementation lives in:
  * cw2pb_pipeline.py - headless CLI + capture pipeline + job queue
  * cw2pb_server.py   - HTTP service on top of the same pipeline

`cw2pb serve` starts the service; anything else is handed to the headless CLI.
Importing this module stays light: FastAPI/uvicorn load only for `serve`.
"""
from __future__ import annotations

import sys
from cw2pb_pipeline import headless_main


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if args and args[0] == 'serve':
        try:
            import cw2pb_server
        except ModuleNotFoundError as e:
            if 'fastapi' in str(e) or 'uvicorn' in str(e):
                print('Service components not installed. Install with: pip install fastapi uvicorn')
                return 1
            raise
        cw2pb_server.serve()
        return 0
    return headless_main(args)


if __name__ == '__main__':  # pragma: no cover
    raise SystemExit(main())
