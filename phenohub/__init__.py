"""PhenoHub backend: catalogue storage, report metrics and media link helpers."""
