"""CampusCash direct messaging: message store, request gate and call signaling."""

from .aggregator import aggregate
from .api import create_app
from .backend import Backend, HttpBackend, LocalBackend
from .calls import CallSession, PeerConnection, Ringtone
from .cli import main
from .config import MessagingConfig, load_config_from_env
from .gate import MessageRequestGate, composer_state
from .message_store import MessageStore
from .models import CallRequest, ComposerState, Conversation, Message, Profile, Relationship, RequestThread
from .realtime import LocalRealtimeClient, RealtimeClient, WebSocketRealtimeClient
from .screen import MessagesScreen, Notification
from .service import DataService

__all__ = [
    "Backend",
    "CallRequest",
    "CallSession",
    "ComposerState",
    "Conversation",
    "DataService",
    "HttpBackend",
    "LocalBackend",
    "LocalRealtimeClient",
    "Message",
    "MessageRequestGate",
    "MessageStore",
    "MessagesScreen",
    "MessagingConfig",
    "Notification",
    "PeerConnection",
    "Profile",
    "RealtimeClient",
    "Relationship",
    "RequestThread",
    "Ringtone",
    "WebSocketRealtimeClient",
    "aggregate",
    "composer_state",
    "create_app",
    "load_config_from_env",
    "main",
]
