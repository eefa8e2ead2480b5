from chat_core.feedback.recorder import FeedbackRecorder

__all__ = ["FeedbackRecorder"]
