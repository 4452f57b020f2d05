from .device import Device
from .telemetry import Telemetry

__all__ = ["Device", "Telemetry"]
