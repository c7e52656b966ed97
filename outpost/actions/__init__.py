from outpost.actions.base import Action, ActionState
from outpost.actions.bundle_install import BundleInstall
from outpost.actions.file import File
from outpost.actions.host_info import HostInfo
from outpost.actions.remote_exec import RemoteExec
from outpost.actions.service_start import ServiceStart
from outpost.actions.user import User

ACTIONS = {cls.name: cls for cls in (BundleInstall, File, HostInfo, RemoteExec, ServiceStart, User)}

__all__ = [
    "ACTIONS",
    "Action",
    "ActionState",
    "BundleInstall",
    "File",
    "HostInfo",
    "RemoteExec",
    "ServiceStart",
    "User",
]
