#!/usr/bin/env python3
"""
camsignal - Main Application
FastAPI server for camera session signaling
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from camsignal import __version__
from camsignal.api.routes import push as push_routes
from camsignal.api.routes import sessions as session_routes
from camsignal.providers.base.transport_adapter import TransportAdapter
from camsignal.providers.transport.managed_cloud import CloudCredentials, HttpEndpointDiscovery, ManagedCloudTransport
from camsignal.providers.transport.pull import PullTransport
from camsignal.providers.transport.push import PushTransport
from camsignal.providers.transport.relay import RelayTransport
from camsignal.services.heartbeat_supervisor import HeartbeatSupervisor
from camsignal.services.preferences import PreferencesService, get_preferences
from camsignal.services.push_request_broker import PushRequestBroker
from camsignal.services.relay_hub import init_relay_hub
from camsignal.services.session_orchestrator import init_session_orchestrator
from camsignal.services.websocket_manager import websocket_manager
from camsignal.utils.logger import get_logger

logger = logging.getLogger(__name__)

app = FastAPI(title="camsignal", version=__version__)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global services - created on startup
preferences_service = None
orchestrator = None
supervisor = None
relay_hub = None
push_broker = None
adapters: List[TransportAdapter] = []

# Include routers
app.include_router(session_routes.router)
app.include_router(push_routes.router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """UI WebSocket: session state, stats and relay health"""
    await websocket_manager.connect(websocket)

    try:
        await websocket_manager.send_snapshot(
            websocket,
            orchestrator.get_status() if orchestrator else None,
            supervisor.get_state() if supervisor else None,
        )

        while True:
            websocket_manager.handle_client_message(websocket, await websocket.receive_text())
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"UI WebSocket error: {e}")
    finally:
        websocket_manager.disconnect(websocket)


@app.websocket("/ws/relay")
async def relay_endpoint(websocket: WebSocket):
    """Relay broker for producers and viewers"""
    if relay_hub is None:
        await websocket.close(code=1013)
        return
    await relay_hub.serve(websocket)


@app.get("/")
async def root():
    return {"name": "camsignal", "version": __version__, "status": "running"}


def build_adapters(prefs: PreferencesService, broker: PushRequestBroker) -> List[TransportAdapter]:
    """One adapter per enabled transport section."""
    built: List[TransportAdapter] = []

    relay_config = prefs.get_relay_config()
    if relay_config.enabled:
        built.append(
            RelayTransport(
                relay_config.url,
                client_type=relay_config.client_type,
                connect_timeout_s=relay_config.connect_timeout_s,
            )
        )

    push_config = prefs.get_push_config()
    if push_config.enabled:
        built.append(PushTransport(broker, push_config.answer_timeout_ms, auto_accept=push_config.auto_accept))

    pull_config = prefs.get_pull_config()
    if pull_config.enabled and pull_config.endpoint_template:
        built.append(
            PullTransport(
                pull_config.endpoint_template,
                strip_offer_candidates=pull_config.strip_candidates,
                request_timeout_s=pull_config.request_timeout_s,
                headers=pull_config.headers,
            )
        )

    cloud_config = prefs.get_managed_cloud_config()
    if cloud_config.enabled and cloud_config.discovery_url:

        def resolve_credentials() -> CloudCredentials:
            # re-read so rotated keys apply to the next channel
            current = prefs.get_managed_cloud_config()
            return CloudCredentials(
                access_key_id=current.access_key_id,
                secret_access_key=current.secret_access_key,
                session_token=current.session_token or None,
            )

        built.append(
            ManagedCloudTransport(
                HttpEndpointDiscovery(cloud_config.discovery_url, cloud_config.region, cloud_config.role),
                resolve_credentials,
                channel_template=cloud_config.channel_template,
                client_id=cloud_config.client_id or None,
                ping_interval_s=cloud_config.ping_interval_s,
            )
        )

    return built


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global preferences_service, orchestrator, supervisor, relay_hub, push_broker, adapters

    get_logger("camsignal")
    preferences_service = get_preferences()

    hub_config = preferences_service.get_hub_config()
    if hub_config.enabled:
        relay_hub = init_relay_hub(
            hub_config.ice_servers, hub_config.connection_timeout_s, hub_config.sweep_interval_s
        )
        await relay_hub.start()

    push_broker = PushRequestBroker(preferences_service.get_push_config().answer_timeout_ms)
    adapters = build_adapters(preferences_service, push_broker)

    orchestrator = init_session_orchestrator(adapters, preferences_service.get_session_config())
    orchestrator.add_state_listener(websocket_manager.publish_state_change)
    orchestrator.add_stats_listener(websocket_manager.publish_stats)

    relay: Optional[RelayTransport] = None
    for adapter in adapters:
        if isinstance(adapter, RelayTransport):
            relay = adapter
            continue
        try:
            await adapter.open()
        except Exception as e:
            logger.error(f"Could not open {adapter.kind.value} transport: {e}")
        if isinstance(adapter, PushTransport):
            push_routes.set_push_transport(adapter)

    if relay is not None:
        supervisor = HeartbeatSupervisor(relay, preferences_service.get_heartbeat_config())
        supervisor.add_listener(orchestrator.on_relay_health)
        supervisor.add_listener(websocket_manager.publish_relay_health)
        await supervisor.start()
        session_routes.set_heartbeat_supervisor(supervisor)

    session_routes.set_session_orchestrator(orchestrator)
    logger.info(f"camsignal started with transports: {', '.join(a.kind.value for a in adapters) or 'none'}")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("camsignal shutting down...")
    if supervisor:
        await supervisor.stop()
    if orchestrator:
        await orchestrator.shutdown()
    for adapter in adapters:
        try:
            await adapter.shutdown()
        except Exception as e:
            logger.warning(f"{adapter.kind.value} shutdown failed: {e}")
    if relay_hub:
        await relay_hub.stop()


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
