"""ToolHub device agent.

Runs on a client device: registers the device with the shared store,
listens for targeted and broadcast commands, and fetches the tool catalog
from the ToolHub server with its ``X-Device-ID``.
"""

__version__ = "2.0.0"
