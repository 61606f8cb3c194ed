"""
Shared, cross-cutting code for the API.

`core/` holds small building blocks the feature packages use: DB wiring,
env settings and logging, the Ollama client, and the checkpointed step
runner. Feedback-specific SQL and business logic live in `feedback/`.
"""
