"""ToolHub — tool catalog server with a remote device control plane.

The control plane keeps track of client devices, enforces administrator
block decisions on every request, and delivers out-of-band commands to one
device or to every device through a shared key-value store.

Quickstart::

    from toolhub.config import Settings
    from toolhub.service import DeviceControlService

    service = DeviceControlService(Settings.from_env())
    await service.start()
    service.gate.is_blocked("dev_1a2b3c")
"""

__version__ = "2.0.0"
