"""
Kubernetes pod exec transport.

Uses the official ``kubernetes`` client: the cluster credentials arrive as a
base64 encoded kubeconfig, commands run through the pod ``exec`` websocket
stream, and files are copied by streaming base64 chunks into the container.
"""

from __future__ import annotations

import base64
import binascii
import logging
import posixpath
import shlex
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream

from outpost.context import ActionContext
from outpost.errors import ConfigurationError, RemoteExecutionError, TransportError
from outpost.transport.base import Runnable, Transport, render
from outpost.transport.content import Content

LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
# Stays well below the kernel's per-argument limit once quoted.
_COPY_CHUNK = 64 * 1024


@dataclass(slots=True)
class KubernetesOptions:
    kubeconfig_base64: str
    context_name: str
    pod: str
    namespace: str = DEFAULT_NAMESPACE
    container: Optional[str] = None


def decode_kubeconfig(encoded: str) -> Dict[str, Any]:
    try:
        raw = base64.b64decode(encoded, validate=True)
        data = yaml.safe_load(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            ("transport", "kubernetes", "kubeconfig_base64"),
            f"unable to decode kubeconfig: {exc}",
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError(
            ("transport", "kubernetes", "kubeconfig_base64"),
            "kubeconfig must decode to a mapping",
        )
    return data


class KubernetesTransport(Transport):
    kind = "kubernetes"

    def __init__(self, core: k8s_client.CoreV1Api, options: KubernetesOptions) -> None:
        self._core = core
        self.options = options

    @classmethod
    def connect(cls, ctx: ActionContext, options: KubernetesOptions) -> "KubernetesTransport":
        ctx.check()
        config_dict = decode_kubeconfig(options.kubeconfig_base64)
        try:
            api_client = k8s_config.new_client_from_config_dict(
                config_dict, context=options.context_name
            )
        except ConfigException as exc:
            raise ConfigurationError(
                ("transport", "kubernetes", "context_name"),
                f"unable to load kubeconfig context {options.context_name!r}: {exc}",
            ) from exc
        return cls(k8s_client.CoreV1Api(api_client), options)

    @property
    def namespace(self) -> str:
        return self.options.namespace or DEFAULT_NAMESPACE

    def _target(self) -> str:
        target = f"{self.namespace}/{self.options.pod}"
        if self.options.container:
            target += f"[{self.options.container}]"
        return target

    # -------------------------------------------------------------- commands
    def run(self, ctx: ActionContext, command: Runnable) -> Tuple[str, str]:
        cmd = render(command)
        ctx.check()
        LOGGER.debug("k8s exec %s: %s", self._target(), cmd)
        kwargs: Dict[str, Any] = {
            "command": ["sh", "-c", cmd],
            "stderr": True,
            "stdin": False,
            "stdout": True,
            "tty": False,
            "_preload_content": False,
        }
        if self.options.container:
            kwargs["container"] = self.options.container

        stdout: List[str] = []
        stderr: List[str] = []
        try:
            resp = stream(
                self._core.connect_get_namespaced_pod_exec,
                self.options.pod,
                self.namespace,
                **kwargs,
            )
        except ApiException as exc:
            raise TransportError(f"unable to exec in pod {self._target()}: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"unable to reach cluster for {self._target()}: {exc}") from exc

        try:
            while resp.is_open():
                resp.update(timeout=1)
                self._drain(resp, stdout, stderr)
                if ctx.cancelled():
                    resp.close()
                    ctx.check()
            self._drain(resp, stdout, stderr)
            exit_code = resp.returncode
        except OSError as exc:
            raise TransportError(f"exec stream to {self._target()} failed: {exc}") from exc
        finally:
            resp.close()

        out = "".join(stdout)
        err = "".join(stderr)
        if exit_code:
            raise RemoteExecutionError(
                f"command failed in pod {self._target()}: {cmd}",
                command=cmd,
                exit_code=exit_code,
                stdout=out,
                stderr=err,
            )
        return out, err

    @staticmethod
    def _drain(resp, stdout: List[str], stderr: List[str]) -> None:
        if resp.peek_stdout():
            stdout.append(resp.read_stdout())
        if resp.peek_stderr():
            stderr.append(resp.read_stderr())

    # ----------------------------------------------------------------- files
    def copy(self, ctx: ActionContext, content: Content, destination: str) -> None:
        encoded = base64.b64encode(content.read()).decode("ascii")
        staging = posixpath.join(
            posixpath.dirname(destination) or ".",
            f".{posixpath.basename(destination)}.{uuid.uuid4().hex[:8]}.b64",
        )
        quoted = shlex.quote(staging)
        self.run(ctx, f": > {quoted}")
        for offset in range(0, len(encoded), _COPY_CHUNK):
            chunk = encoded[offset : offset + _COPY_CHUNK]
            self.run(ctx, f"printf '%s' '{chunk}' >> {quoted}")
        self.run(
            ctx,
            f"base64 -d {quoted} > {shlex.quote(destination)} && rm -f {quoted}",
        )

    def close(self) -> None:
        api_client = getattr(self._core, "api_client", None)
        if api_client is not None:
            api_client.close()
