"""Application bootstrap exports."""

from gptbridge.app.bootstrap import BridgeApp, build_app

__all__ = ["BridgeApp", "build_app"]
