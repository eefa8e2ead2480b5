from chat_core.streaming.controller import StreamController, StreamHandle, StreamOutcome

__all__ = ["StreamController", "StreamHandle", "StreamOutcome"]
