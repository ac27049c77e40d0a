from docdigest.observability.tracing import init_langsmith, traced

__all__ = ["init_langsmith", "traced"]
