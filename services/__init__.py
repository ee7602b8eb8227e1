"""Quizcore services."""

__all__ = ["assessment"]
