"""Interaction record reconstruction."""

from chat_pipeline.record.reconstructor import (
    estimate_tokens,
    extract_recall_methods,
    filter_messages,
    reconstruct,
    split_content,
)

__all__ = [
    "estimate_tokens",
    "extract_recall_methods",
    "filter_messages",
    "reconstruct",
    "split_content",
]
