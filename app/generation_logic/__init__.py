"""Generation logic package.

This package groups the helpers between the HTTP routes and the workflow
services: upload validation (`file_processing`), event sinks and the NDJSON
stream attach (`stream_orchestrator`), and the throttled text replay
(`text_replay`). Keeping them here allows `app/api/routes.py` to stay focused
on HTTP routing.

Submodules are imported directly; `text_replay` is used by the stage services,
so nothing is re-exported here.
"""
