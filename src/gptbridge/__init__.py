"""gptbridge - answer Discord mentions with OpenAI chat completions."""

__version__ = "0.1.0"
