"""Service layer exports."""

from .bookkeeping import BookkeepingOutcome, DeadLetterLog, get_dead_letter_log, run_secondary
from .llm import CompletionChunk, CompletionRequest, LLMClient, get_llm_client
from .realtime import RealtimeBroadcaster, RealtimeHub, conversation_topic, get_broadcaster, get_realtime_hub
from .relay import ChatRelay, StreamProducerClient, get_chat_relay, get_producer_client
from .streaming import PreparedTurn, StreamingChunk, StreamProducer, get_stream_producer
from .turns import ActiveTurn, TurnRegistry, get_turn_registry

__all__ = [
    "BookkeepingOutcome",
    "DeadLetterLog",
    "get_dead_letter_log",
    "run_secondary",
    "CompletionChunk",
    "CompletionRequest",
    "LLMClient",
    "get_llm_client",
    "RealtimeBroadcaster",
    "RealtimeHub",
    "conversation_topic",
    "get_broadcaster",
    "get_realtime_hub",
    "ChatRelay",
    "StreamProducerClient",
    "get_chat_relay",
    "get_producer_client",
    "PreparedTurn",
    "StreamingChunk",
    "StreamProducer",
    "get_stream_producer",
    "ActiveTurn",
    "TurnRegistry",
    "get_turn_registry",
]
