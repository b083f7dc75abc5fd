"""clawfleet - control plane for a fleet of gateway-paired nodes.

Drives a remote gateway over SSH with an allow-list of commands, reconciles
the gateway's live node list with locally tracked machines, and manages
device pairing.

Quick Start:
    from clawfleet import ControlPlane, load_settings

    plane = ControlPlane.from_settings(load_settings())
    view = await plane.reconcile()
"""

__version__ = "0.1.0"

from clawfleet.config import Settings, load_settings
from clawfleet.control import ControlPlane

__all__ = ["__version__", "ControlPlane", "Settings", "load_settings"]
