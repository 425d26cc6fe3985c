from fastapi import Request, WebSocket

from app.services.relay_engine import RelayEngine


def get_relay(request: Request) -> RelayEngine:
    return request.app.state.relay


def get_socket_relay(websocket: WebSocket) -> RelayEngine:
    return websocket.app.state.relay
