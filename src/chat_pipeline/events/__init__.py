from chat_pipeline.events.bus import EventBus, Handler

__all__ = ["EventBus", "Handler"]
