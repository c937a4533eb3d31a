"""
Recognition core

Preprocess -> extract -> (match -> estimate pose -> summarize) per target,
aggregated by RecognitionEngine into one MatchReport per query frame.

Usage:
    from recognition import RecognitionEngine
"""
from .engine import RecognitionEngine

__all__ = ["RecognitionEngine"]
