"""ai-delegation: decision core for delegating work among autonomous agents."""

__version__ = "0.1.0"
