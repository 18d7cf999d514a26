"""
SDK for AI Cost Controller.

Provides the OpenAI-backed narration of compiled decisions.
"""

from .narrator import DecisionNarrator

__all__ = ["DecisionNarrator"]
