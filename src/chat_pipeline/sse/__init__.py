"""Server-sent event framing and parsing."""

from chat_pipeline.sse.decoder import FrameDecoder, split_legacy_frame
from chat_pipeline.sse.parser import DONE_SENTINEL, decode_prompt_history, parse_frame

__all__ = [
    "DONE_SENTINEL",
    "FrameDecoder",
    "decode_prompt_history",
    "parse_frame",
    "split_legacy_frame",
]
