"""Cluster API adapter driving kubectl."""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
from collections.abc import AsyncIterator
from typing import Any

import structlog

from mastodon_orchestrator.config import KubectlSettings
from mastodon_orchestrator.domain.errors import ClusterAPIError
from mastodon_orchestrator.domain.models.resource import ResourceKind, ResourceRef
from mastodon_orchestrator.domain.ports.cluster import ClusterAPI


logger = structlog.get_logger(__name__)

# Fully qualified resource names so kubectl never guesses the API group.
RESOURCE_NAMES: dict[ResourceKind, str] = {
    ResourceKind.NAMESPACE: "namespace",
    ResourceKind.PERSISTENT_VOLUME: "persistentvolume",
    ResourceKind.PERSISTENT_VOLUME_CLAIM: "persistentvolumeclaim",
    ResourceKind.SECRET: "secret",
    ResourceKind.CONFIG_MAP: "configmap",
    ResourceKind.SERVICE: "service",
    ResourceKind.DEPLOYMENT: "deployment.apps",
    ResourceKind.JOB: "job.batch",
    ResourceKind.INGRESS: "ingress.networking.k8s.io",
}

REASON_STATUS: dict[str, int] = {
    "BadRequest": 400,
    "Unauthorized": 401,
    "Forbidden": 403,
    "NotFound": 404,
    "AlreadyExists": 409,
    "Conflict": 409,
    "Invalid": 422,
    "TooManyRequests": 429,
    "InternalError": 500,
    "ServiceUnavailable": 503,
    "Timeout": 504,
}

TRANSIENT_STATUSES = frozenset({429, 500, 503, 504})

TRANSIENT_MARKERS = (
    "the server is currently unable to handle the request",
    "Unable to connect to the server",
    "connection refused",
    "connection reset by peer",
    "i/o timeout",
    "TLS handshake timeout",
    "context deadline exceeded",
    "etcdserver: request timed out",
    "unexpected EOF",
)

_REASON = re.compile(r"Error from server \((\w+)\)")


def classify_error(verb: str, target: str, stderr: str) -> ClusterAPIError:
    """Turn kubectl stderr into a ClusterAPIError with status and transience."""
    message = stderr.strip() or f"kubectl {verb} exited with an error"
    match = _REASON.search(message)
    status = REASON_STATUS.get(match.group(1)) if match else None
    transient = status in TRANSIENT_STATUSES or any(
        marker in message for marker in TRANSIENT_MARKERS
    )
    return ClusterAPIError(f"{verb} {target}: {message}", status=status, transient=transient)


class KubectlClusterAPI(ClusterAPI):
    """ClusterAPI backed by the kubectl binary.

    Namespace, context and kubeconfig are passed explicitly on every
    invocation. Updates use server-side apply under a dedicated field
    manager; creates use ``kubectl create`` so a concurrent creator
    surfaces as a conflict.
    """

    def __init__(self, settings: KubectlSettings) -> None:
        self._settings = settings

    def _base_args(self) -> list[str]:
        args = [self._settings.binary]
        if self._settings.kubeconfig:
            args.extend(["--kubeconfig", self._settings.kubeconfig])
        if self._settings.context:
            args.extend(["--context", self._settings.context])
        args.append(f"--request-timeout={self._settings.request_timeout}s")
        return args

    @staticmethod
    def _scope(ref: ResourceRef, namespace: str) -> list[str]:
        return ["--namespace", namespace] if ref.namespaced else []

    @staticmethod
    def _target(ref: ResourceRef) -> str:
        return f"{RESOURCE_NAMES[ref.kind]}/{ref.name}"

    @staticmethod
    def _manifest_ref(manifest: dict[str, Any]) -> ResourceRef:
        return ResourceRef(kind=ResourceKind(manifest["kind"]), name=manifest["metadata"]["name"])

    async def _run(self, *args: str, stdin: bytes | None = None) -> tuple[int, str, str]:
        command = [*self._base_args(), *args]
        logger.debug("kubectl_invoked", args=list(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ClusterAPIError(f"cannot run {self._settings.binary}: {exc}") from exc

        stdout, stderr = await process.communicate(stdin)
        return process.returncode or 0, stdout.decode(), stderr.decode()

    @staticmethod
    def _decode(verb: str, target: str, stdout: str) -> dict[str, Any]:
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ClusterAPIError(f"{verb} {target}: unreadable kubectl output") from exc

    async def get(self, ref: ResourceRef, namespace: str) -> dict[str, Any] | None:
        target = self._target(ref)
        code, stdout, stderr = await self._run(
            "get", target, *self._scope(ref, namespace), "-o", "json"
        )
        if code != 0:
            error = classify_error("get", target, stderr)
            if error.not_found:
                return None
            raise error
        return self._decode("get", target, stdout)

    async def create(self, manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
        ref = self._manifest_ref(manifest)
        code, stdout, stderr = await self._run(
            "create", "-f", "-", *self._scope(ref, namespace), "-o", "json",
            stdin=json.dumps(manifest).encode(),
        )
        if code != 0:
            raise classify_error("create", str(ref), stderr)
        return self._decode("create", str(ref), stdout)

    async def update(self, manifest: dict[str, Any], namespace: str) -> dict[str, Any]:
        ref = self._manifest_ref(manifest)
        code, stdout, stderr = await self._run(
            "apply",
            "--server-side",
            "--force-conflicts",
            f"--field-manager={self._settings.field_manager}",
            "-f", "-",
            *self._scope(ref, namespace),
            "-o", "json",
            stdin=json.dumps(manifest).encode(),
        )
        if code != 0:
            raise classify_error("apply", str(ref), stderr)
        return self._decode("apply", str(ref), stdout)

    async def delete(self, ref: ResourceRef, namespace: str) -> bool:
        target = self._target(ref)
        code, stdout, stderr = await self._run(
            "delete",
            target,
            *self._scope(ref, namespace),
            "--ignore-not-found",
            "--wait=true",
            "--cascade=foreground",
            f"--timeout={self._settings.delete_timeout}s",
        )
        if code != 0:
            raise classify_error("delete", target, stderr)
        # --ignore-not-found prints nothing when the object was absent
        return bool(stdout.strip())

    async def _succeeded_pod(self, job_name: str, namespace: str) -> str:
        """Name of the newest pod of the job that ran to completion."""
        target = f"pods of job/{job_name}"
        code, stdout, stderr = await self._run(
            "get", "pods",
            "--namespace", namespace,
            "--selector", f"job-name={job_name}",
            "--field-selector=status.phase=Succeeded",
            "-o", "json",
        )
        if code != 0:
            raise classify_error("get", target, stderr)
        pods = self._decode("get", target, stdout).get("items") or []
        if not pods:
            raise ClusterAPIError(f"job/{job_name} has no succeeded pod", status=404)
        newest = max(pods, key=lambda pod: pod["metadata"].get("creationTimestamp", ""))
        return newest["metadata"]["name"]

    async def stream_logs(self, job_name: str, namespace: str) -> AsyncIterator[str]:
        pod = await self._succeeded_pod(job_name, namespace)
        command = [
            *self._base_args(),
            "logs",
            f"pod/{pod}",
            "--namespace", namespace,
            "--all-containers=true",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ClusterAPIError(f"cannot run {self._settings.binary}: {exc}") from exc

        assert process.stdout is not None
        assert process.stderr is not None
        try:
            async for raw in process.stdout:
                yield raw.decode().rstrip("\r\n")

            stderr = await process.stderr.read()
            if await process.wait() != 0:
                raise classify_error("logs", f"pod/{pod}", stderr.decode())
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()

    async def port_open(self, service: str, port: int, namespace: str) -> bool:
        svc = await self.get(ResourceRef(kind=ResourceKind.SERVICE, name=service), namespace)
        if svc is None:
            return False
        ports = [p.get("port") for p in (svc.get("spec") or {}).get("ports") or []]
        if port not in ports:
            return False

        target = f"endpoints/{service}"
        code, stdout, stderr = await self._run(
            "get", target, "--namespace", namespace, "-o", "json"
        )
        if code != 0:
            error = classify_error("get", target, stderr)
            if error.not_found:
                return False
            raise error
        endpoints = self._decode("get", target, stdout)
        return any(subset.get("addresses") for subset in endpoints.get("subsets") or [])
