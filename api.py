# api.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from broadcast import WebSocketHub
from config_utils import Settings, load_config
from fastapi import Body, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi import WebSocketDisconnect
from ingest import IngestValidationError, UnknownDeviceError
from monitor import Services, build_services, configure_logging
from notify import Endpoint
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


def create_app(
    services: Optional[Services] = None,
    config_path: str = "config.yml",
    run_liveness: bool = True,
) -> FastAPI:
    """
    Without `services` the object graph is built from `config_path` at startup,
    with a WebSocketHub as the realtime broadcaster.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        svc = services
        if svc is None:
            settings = Settings.from_config(load_config(config_path))
            configure_logging(settings.log_level)
            svc = build_services(settings=settings, broadcaster=WebSocketHub())
        if isinstance(svc.broadcaster, WebSocketHub):
            svc.broadcaster.bind_loop(asyncio.get_running_loop())
        app.state.services = svc
        if run_liveness:
            svc.liveness.start()
        yield
        if owned:
            svc.close()
        else:
            svc.liveness.stop()

    app = FastAPI(title="Flood Monitor", version="0.1.0", lifespan=lifespan)

    @app.post("/api/sensor-data", status_code=201)
    def submit_sensor_data(request: Request, payload: Any = Body(...)):
        svc: Services = request.app.state.services
        try:
            result = svc.ingestion.submit(payload)
        except IngestValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except UnknownDeviceError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        except SQLAlchemyError:
            logger.exception("Persistence failure while ingesting reading")
            raise HTTPException(status_code=500, detail="could not store reading")
        return {"message": "Sensor data received.", "data": result.to_dict()}

    @app.get("/api/devices/{device_id}/latest")
    def latest_reading(request: Request, device_id: str):
        snapshot = request.app.state.services.store.get_latest_snapshot(device_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="no reading for device")
        return snapshot.to_dict()

    @app.get("/api/alerts")
    def get_alerts(
        request: Request,
        device_id: Optional[str] = None,
        alert_type: Optional[str] = None,
        active: Optional[bool] = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        store = request.app.state.services.store
        rows = store.list_alerts(
            device_id=device_id, alert_type=alert_type, is_active=active, limit=limit
        )
        return {"alerts": [a.to_dict() for a in rows]}

    @app.post("/api/notifications/subscribe", status_code=201)
    def subscribe(request: Request, subscription: Dict[str, Any] = Body(...)):
        try:
            endpoint = Endpoint.from_subscription(subscription)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        store = request.app.state.services.store
        saved = store.save_subscription(endpoint.key, subscription)
        return {"id": saved.id, "endpoint": saved.endpoint, "kind": endpoint.kind}

    @app.put("/api/notifications/preferences")
    def update_preferences(request: Request, body: Dict[str, Any] = Body(...)):
        endpoint = _endpoint_key(body.get("subscriptionEndpoint"), body.get("fcmToken"))
        device_ids = body.get("deviceIds")
        if not isinstance(device_ids, list) or not all(
            isinstance(d, str) for d in device_ids
        ):
            raise HTTPException(
                status_code=400, detail="deviceIds must be an array of strings"
            )
        try:
            saved = request.app.state.services.store.set_preferences(
                endpoint, device_ids
            )
        except LookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc))
        return {"endpoint": endpoint, "deviceIds": saved}

    @app.get("/api/notifications/preferences")
    def get_preferences(
        request: Request,
        endpoint: Optional[str] = None,
        fcm_token: Optional[str] = Query(None, alias="fcmToken"),
    ):
        key = _endpoint_key(endpoint, fcm_token)
        device_ids: List[str] = request.app.state.services.store.get_preferences(key)
        return {"endpoint": key, "deviceIds": device_ids}

    @app.websocket("/ws")
    async def live_updates(websocket: WebSocket):
        hub = websocket.app.state.services.broadcaster
        if not isinstance(hub, WebSocketHub):
            await websocket.close(code=1011)
            return
        await hub.connect(websocket)
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect(websocket)

    return app


def _endpoint_key(endpoint: Optional[str], fcm_token: Optional[str]) -> str:
    if isinstance(endpoint, str) and endpoint:
        return Endpoint.from_url(endpoint).key
    if isinstance(fcm_token, str) and fcm_token:
        return Endpoint.from_token(fcm_token).key
    raise HTTPException(
        status_code=400, detail="subscription endpoint or FCM token is required"
    )


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host="0.0.0.0", port=8000)
