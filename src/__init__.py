"""SlippiSheet - Slippi ranked session tracker."""

__version__ = "0.1.0"
