"""
Recognition session

- framing: 1-byte-header chunking of logical messages
- protocol: request/response JSON envelopes
- session: per-connection state machine (initialize -> serve -> close)
- server: FastAPI app exposing /ws, /health and /catalog/{name}/export
- client: blocking websocket-client counterpart

Entry point:
    python -m session.server --config config/params.yaml
"""
