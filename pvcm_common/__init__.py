"""Cluster plumbing shared by every migration phase."""

from .errors import (
    MigrationError,
    AuthError,
    ConfigError,
    ResourceTimeoutError,
    ResourceFailedError,
    ProvisioningError,
    LaunchError,
    ReadinessTimeoutError,
    TransferError,
    ExecError,
)
from .session import ClusterCredentials, ClusterSession
from .poller import ResourceKind, wait_for_condition
from .pod_exec import ExecResult, exec_in_pod

__all__ = [
    'MigrationError',
    'AuthError',
    'ConfigError',
    'ResourceTimeoutError',
    'ResourceFailedError',
    'ProvisioningError',
    'LaunchError',
    'ReadinessTimeoutError',
    'TransferError',
    'ExecError',
    'ClusterCredentials',
    'ClusterSession',
    'ResourceKind',
    'wait_for_condition',
    'ExecResult',
    'exec_in_pod',
]
