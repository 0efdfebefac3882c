"""ClipSync - peer-to-peer clipboard, snippet and file sync for the LAN"""

__version__ = "0.1.0"
