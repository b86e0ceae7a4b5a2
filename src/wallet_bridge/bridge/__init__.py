from wallet_bridge.bridge.channel import ChannelClosed, Delivery, Endpoint, MemoryEndpoint, WebSocketEndpoint, channel_pair
from wallet_bridge.bridge.client import WalletClient
from wallet_bridge.bridge.dispatcher import Dispatcher
from wallet_bridge.bridge.envelope import EventEnvelope, MessageType, ReplyEnvelope, RequestEnvelope, new_request_id
from wallet_bridge.bridge.relay import Relay
from wallet_bridge.bridge.sweeper import SweepReport, Sweeper

__all__ = [
    "ChannelClosed",
    "Delivery",
    "Dispatcher",
    "Endpoint",
    "EventEnvelope",
    "MemoryEndpoint",
    "MessageType",
    "Relay",
    "ReplyEnvelope",
    "RequestEnvelope",
    "SweepReport",
    "Sweeper",
    "WalletClient",
    "WebSocketEndpoint",
    "channel_pair",
    "new_request_id",
]
