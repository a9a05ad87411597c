"""Run gptbridge as a module."""

from gptbridge.cli import app

if __name__ == "__main__":
    app()
