"""Message processing components."""

from .llm import Classifier
from .rules import DispositionEngine, decide

__all__ = ["Classifier", "DispositionEngine", "decide"]
