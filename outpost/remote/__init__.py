from outpost.remote.files import (
    RemoteOperationRequest,
    copy_file,
    create_directory,
    delete_file,
)
from outpost.remote.script import RunScriptRequest, RunScriptResponse, run_script
from outpost.remote.service import ServiceStartRequest, start_service
from outpost.remote.systemd import ServiceUnit, StatusCode, SystemdClient
from outpost.remote.target import HostInfo, TargetFacts
from outpost.remote.user import User, ensure_user, find_user

__all__ = [
    "HostInfo",
    "RemoteOperationRequest",
    "RunScriptRequest",
    "RunScriptResponse",
    "ServiceStartRequest",
    "ServiceUnit",
    "StatusCode",
    "SystemdClient",
    "TargetFacts",
    "User",
    "copy_file",
    "create_directory",
    "delete_file",
    "ensure_user",
    "find_user",
    "run_script",
    "start_service",
]
