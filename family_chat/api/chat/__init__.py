"""
Chat package: the realtime gateway and its payload helpers.

Package Exports:
    - register_chat_socketio_handlers: registers the Socket.IO gateway
    - ConnectionRegistry: live connection and room bookkeeping
    - room_broadcaster: room emit helper for background threads
"""

from .websocket_handlers import (
    ConnectionRegistry, register_chat_socketio_handlers, room_broadcaster
)

__all__ = ['ConnectionRegistry', 'register_chat_socketio_handlers', 'room_broadcaster']
