"""
Target catalog

- TargetCatalog: immutable per-session snapshot of TargetRecords
- codec: binary blob serialize/deserialize/export for offline distribution
- providers: where a session gets its snapshot (file, HTTP, in-memory)
- builder: reference image bytes -> TargetRecord
"""
