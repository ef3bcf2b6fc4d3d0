"""
Controllers for the owner kinds handled by the operator
"""

# Local
from .base import ControllerBase
from .controlplane import ControlPlaneController
from .dataplane import DataPlaneController
from .gateway import GatewayController

# Every controller run by the operator, in the order their watches start
ALL_CONTROLLERS = [DataPlaneController, ControlPlaneController, GatewayController]
