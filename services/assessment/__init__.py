"""Assessment service: quizzes, attempts, grading and analytics."""

__all__ = ["aggregate", "analytics", "anti_cheat", "app", "errors", "grading", "repo", "routes", "service"]
