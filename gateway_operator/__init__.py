"""
Package exports
"""

# Local
from . import config, reconcile, status
from .controllers import (
    ALL_CONTROLLERS,
    ControllerBase,
    ControlPlaneController,
    DataPlaneController,
    GatewayController,
)
from .deploy_manager import DeployManagerBase
from .ensure import ChildRole, EnsureResult, ensure
from .exceptions import (
    assert_cluster,
    assert_config,
    assert_precondition,
    assert_valid,
)
from .reconcile import ReconcileManager, ReconciliationResult, RequeueParams
