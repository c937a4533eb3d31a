from __future__ import annotations

import argparse
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, WebSocket
from fastapi.responses import Response
from starlette.websockets import WebSocketDisconnect, WebSocketState

from catalog.codec import CONTENT_TYPE, export_catalog
from catalog.providers import API_KEY_HEADER, CatalogProvider, provider_from_config
from catalog.snapshot import TargetCatalog
from common.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from common.errors import CatalogUnavailable, DecodeError
from common.logging_setup import get_logger, setup_logging
from recognition.engine import RecognitionEngine
from recognition.features import FingerprintExtractor
from session.framing import CloseFrame, DataFrame
from session.session import RecognitionSession
from session.transport import Event, TransportClosed


log = get_logger("server")


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the session Transport protocol."""

    def __init__(self, websocket: WebSocket):
        self.ws = websocket

    async def receive(self) -> Event:
        msg = await self.ws.receive()
        if msg["type"] == "websocket.disconnect":
            return CloseFrame(int(msg.get("code") or 1000), msg.get("reason") or "")
        data = msg.get("bytes")
        if data is None:
            raise DecodeError("text frames are not supported; send binary chunks")
        return DataFrame(data)

    async def send(self, data: bytes) -> None:
        if self.ws.client_state != WebSocketState.CONNECTED:
            raise TransportClosed("client disconnected")
        try:
            await self.ws.send_bytes(data)
        except WebSocketDisconnect as e:
            raise TransportClosed(f"client disconnected ({e.code})") from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        # After a client-initiated close the ASGI server has already answered it.
        if self.ws.application_state != WebSocketState.CONNECTED:
            return
        if self.ws.client_state == WebSocketState.DISCONNECTED:
            return
        await self.ws.close(code=code, reason=reason)


def engine_factory(config: AppConfig):
    extractor = FingerprintExtractor(config.extractor)

    def build(catalog: TargetCatalog) -> RecognitionEngine:
        return RecognitionEngine(
            catalog,
            extractor=extractor,
            matcher_config=config.matcher,
            pose_config=config.pose,
            preprocess_options=config.preprocess,
        )

    return build


def create_app(config: Optional[AppConfig] = None, provider: Optional[CatalogProvider] = None) -> FastAPI:
    config = config or AppConfig()
    provider = provider or provider_from_config(config.catalog)
    build_engine = engine_factory(config)

    app = FastAPI(title="Image Target Recognition API", version="1.0.0")
    app.state.config = config
    app.state.provider = provider

    @app.get("/health")
    def health():
        catalog = {"source": config.catalog.source, "name": config.catalog.name}
        try:
            catalog["targets"] = len(provider.fetch(None))
        except CatalogUnavailable as e:
            catalog["targets"] = None
            catalog["error"] = str(e)
        return {"status": "ok", "chunk_size": config.server.chunk_size, "catalog": catalog}

    @app.get("/catalog/{name}/export")
    def export(name: str, x_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER)):
        """Download the caller's catalog as a codec blob named <name>.bin."""
        try:
            records = provider.fetch(x_api_key)
        except CatalogUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        filename, blob = export_catalog(name, records)
        log.info("catalog exported", extra={"extra": {"name": name, "targets": len(records), "bytes": len(blob)}})
        return Response(
            content=blob,
            media_type=CONTENT_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.websocket("/ws")
    async def recognize(websocket: WebSocket):
        api_key = websocket.headers.get(API_KEY_HEADER.lower()) or websocket.query_params.get("api_key")
        await websocket.accept()
        session = RecognitionSession(
            WebSocketTransport(websocket),
            provider,
            build_engine,
            api_key=api_key,
            catalog_name=config.catalog.name,
            chunk_size=config.server.chunk_size,
        )
        await session.run()

    return app


P = load_config(os.environ.get("RECO_CONFIG", DEFAULT_CONFIG_PATH))
app = create_app(P)


def main() -> None:
    ap = argparse.ArgumentParser(description="Image target recognition server")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    ap.add_argument("--host", default=None)
    ap.add_argument("--port", type=int, default=None)
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(args.log_level or cfg.server.log_level)
    log.info("starting server", extra={"extra": {"config": args.config, "catalog": cfg.catalog.source}})
    uvicorn.run(
        create_app(cfg),
        host=args.host or cfg.server.host,
        port=args.port or cfg.server.port,
    )


# -------- local dev entrypoint --------
if __name__ == "__main__":
    main()
