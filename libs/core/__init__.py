__all__ = [
    "config",
    "models",
    "resume_state",
    "llm_provider",
    "tracing",
    "logging",
]
