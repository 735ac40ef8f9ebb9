"""
Speech dispatch engine.

Architecture Overview:

    caller ──▶ Dispatcher.dispatch() ──▶ FIFO (one worker)
                                             │
                    ┌────────────────────────┴───────────────────────┐
                    ▼                                                ▼
          split_segments(text)                        GenerationSession.stream()
             (direct mode)                       (model stream ─▶ TextSegmenter,
                    │                                 bounded tool loop)
                    └────────────────────────┬───────────────────────┘
                                             ▼
                                    CommandExtractor
                                             ▼
                                  VoicevoxSynthesizer
                                             ▼
                         CommandChannel ─▶ subscribers (SSE, tests)
"""

from .channel import CommandChannel, CommandSubscription
from .directives import CommandExtractor
from .dispatcher import Dispatcher, SpeechJob, SpeechRequest
from .generation import GenerationSession
from .history import ConversationHistory
from .idle import IdleNarrator
from .segmenter import TextSegmenter, split_segments
from .synthesizer import VoicevoxSynthesizer
from .tools import ToolContext, ToolDefinition, ToolRegistry

__all__ = [
    "CommandChannel",
    "CommandExtractor",
    "CommandSubscription",
    "ConversationHistory",
    "Dispatcher",
    "GenerationSession",
    "IdleNarrator",
    "SpeechJob",
    "SpeechRequest",
    "TextSegmenter",
    "ToolContext",
    "ToolDefinition",
    "ToolRegistry",
    "VoicevoxSynthesizer",
    "split_segments",
]
