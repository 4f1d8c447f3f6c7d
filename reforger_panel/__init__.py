"""
reforger_panel package
----------------------
Backend of the Arma Reforger server panel: instance registry, SteamCMD
installs with streamed progress, game-server process supervision and the
REST/WebSocket API in front of them.
"""

__version__ = "0.3.0"
