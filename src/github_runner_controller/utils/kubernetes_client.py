"""
Kubernetes container driver for GitHub Runner Controller.

Each runner is one pod plus one Secret holding its registration
credential. The Kubernetes Python client is synchronous, so every call is
pushed to a worker thread and bounded by a timeout.
"""

import asyncio
import base64
from typing import Any, Callable, Dict, List, Optional, TypeVar

import structlog
from kubernetes import client
from kubernetes.client.rest import ApiException

from ..exceptions import ContainerCreateError, CreateFailure, TransientPlatformError
from ..models.configuration import RunnerProfile
from ..models.runner import ContainerHandle, ContainerSpec, ContainerStatus, Credential
from .security import SecurityError, SecurityValidator

T = TypeVar("T")

APP_LABEL = "github-runner"
MANAGED_BY = "github-runner-controller"
CONTAINER_NAME = "runner"
CREDENTIAL_KEY = "registration-token"


class KubernetesContainerDriver:
    """
    Container lifecycle driver backed by the Kubernetes CoreV1 API.

    ``destroy`` is idempotent: a missing pod or secret counts as success.
    ``create`` failures are classified so the scaling engine can tell a
    quota problem (retry later) from a broken spec (stop trying).
    """

    def __init__(self,
                 namespace: str,
                 profiles: Dict[str, RunnerProfile],
                 service_account: str = "github-runner",
                 call_timeout: float = 20.0,
                 api: Optional[client.CoreV1Api] = None,
                 logger: Any = None) -> None:
        self.namespace = namespace
        self.profiles = profiles
        self.service_account = service_account
        self.call_timeout = call_timeout
        self.logger = (logger or structlog.get_logger()).bind(component="k8s_driver", namespace=namespace)
        self.v1 = api or client.CoreV1Api()
        self.security_validator = SecurityValidator()

    async def create(self, spec: ContainerSpec) -> ContainerHandle:
        """Create the credential secret and runner pod for ``spec``."""
        try:
            name = self.security_validator.kubernetes_name(spec.name)
        except SecurityError as e:
            raise ContainerCreateError(CreateFailure.CONFIGURATION, str(e)) from e

        secret_name = f"{name}-token"[:63].rstrip("-")
        profile = self.profiles.get(spec.profile)
        if profile is None:
            raise ContainerCreateError(CreateFailure.CONFIGURATION, f"Unknown runner profile: {spec.profile}")

        pod_manifest = self.build_pod_manifest(name, secret_name, spec, profile)
        issues = self.security_validator.validate_pod_spec(pod_manifest)
        if issues:
            self.logger.error("Pod specification failed security validation", pod_name=name, issues=issues)
            raise ContainerCreateError(CreateFailure.CONFIGURATION, f"Pod spec security issues: {issues}")

        try:
            await self._store_secret(secret_name, spec)
        except ApiException as e:
            raise self._create_error(e, "secret") from e
        except TransientPlatformError as e:
            raise ContainerCreateError(CreateFailure.TRANSIENT, str(e)) from e

        try:
            response = await self._call(self.v1.create_namespaced_pod, namespace=self.namespace, body=pod_manifest)
        except ApiException as e:
            await self._delete_secret(secret_name)
            raise self._create_error(e, "pod") from e
        except TransientPlatformError as e:
            await self._delete_secret(secret_name)
            raise ContainerCreateError(CreateFailure.TRANSIENT, str(e)) from e

        uid = getattr(getattr(response, "metadata", None), "uid", None)
        self.logger.info(
            "Runner pod created",
            pod_name=name,
            repository=spec.repository,
            kind=spec.kind.value,
            instance_id=spec.instance_id,
        )
        return ContainerHandle(name=name, namespace=self.namespace, secret_name=secret_name, uid=uid)

    async def destroy(self, handle: ContainerHandle) -> None:
        """Delete the runner pod and its secret; already-gone is success."""
        try:
            await self._call(
                self.v1.delete_namespaced_pod,
                name=handle.name,
                namespace=handle.namespace,
                grace_period_seconds=30,
            )
            self.logger.info("Pod deletion initiated", pod_name=handle.name)
        except ApiException as e:
            if e.status != 404:
                self.logger.error(
                    "Kubernetes API error deleting pod",
                    pod_name=handle.name,
                    status_code=e.status,
                    reason=e.reason,
                )
                raise TransientPlatformError(f"Failed to delete pod {handle.name}: {e.reason}") from e
            self.logger.info("Pod not found (already deleted)", pod_name=handle.name)

        if handle.secret_name:
            await self._delete_secret(handle.secret_name, strict=True)

    async def list(self, selector: Optional[Dict[str, str]] = None) -> List[ContainerHandle]:
        """Runner pods managed by this controller, optionally narrowed by labels."""
        labels = {"app": APP_LABEL, "managed-by": MANAGED_BY}
        labels.update(selector or {})
        label_selector = ",".join(f"{key}={value}" for key, value in sorted(labels.items()))

        try:
            response = await self._call(
                self.v1.list_namespaced_pod,
                namespace=self.namespace,
                label_selector=label_selector,
            )
        except ApiException as e:
            raise TransientPlatformError(f"Failed to list pods: {e.reason}") from e

        handles = []
        for pod in response.items:
            pod_labels = pod.metadata.labels or {}
            handles.append(ContainerHandle(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace or self.namespace,
                secret_name=self._secret_name_from_pod(pod),
                uid=pod.metadata.uid,
            ))
            self.logger.debug(
                "Listed runner pod",
                pod_name=pod.metadata.name,
                instance_id=pod_labels.get("runner-id"),
            )
        return handles

    async def status(self, handle: ContainerHandle) -> ContainerStatus:
        try:
            pod = await self._call(self.v1.read_namespaced_pod, name=handle.name, namespace=handle.namespace)
        except ApiException as e:
            if e.status == 404:
                return ContainerStatus.ABSENT
            raise TransientPlatformError(f"Failed to read pod {handle.name}: {e.reason}") from e

        phase = (pod.status.phase if pod.status else None) or "Unknown"
        if phase == "Running":
            return ContainerStatus.RUNNING
        if phase == "Pending":
            return ContainerStatus.PENDING
        return ContainerStatus.FAILED

    async def rotate_credential(self, handle: ContainerHandle, credential: Credential) -> None:
        """Replace the credential in the runner's secret."""
        if not handle.secret_name:
            return
        body = {"data": {CREDENTIAL_KEY: self._encode(credential.value.get_secret_value())}}
        try:
            await self._call(
                self.v1.patch_namespaced_secret,
                name=handle.secret_name,
                namespace=handle.namespace,
                body=body,
            )
        except ApiException as e:
            raise TransientPlatformError(f"Failed to rotate credential for {handle.name}: {e.reason}") from e
        self.logger.info("Runner credential rotated", pod_name=handle.name)

    def build_secret_manifest(self, secret_name: str, spec: ContainerSpec) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": secret_name,
                "namespace": self.namespace,
                "labels": self._labels(spec),
            },
            "type": "Opaque",
            "data": {CREDENTIAL_KEY: self._encode(spec.credential.value.get_secret_value())},
        }

    def build_pod_manifest(self,
                           name: str,
                           secret_name: str,
                           spec: ContainerSpec,
                           profile: RunnerProfile) -> Dict[str, Any]:
        security = profile.security_context
        env = [
            {"name": "RUNNER_NAME", "value": name},
            {"name": "RUNNER_REPOSITORY_URL", "value": f"https://github.com/{spec.repository}"},
            {"name": "RUNNER_LABELS", "value": ",".join(spec.labels)},
            {"name": "RUNNER_EPHEMERAL", "value": "false"},
            {
                "name": "RUNNER_TOKEN",
                "valueFrom": {"secretKeyRef": {"name": secret_name, "key": CREDENTIAL_KEY}},
            },
        ]
        for key, value in {**profile.environment_variables, **spec.environment}.items():
            env.append({
                "name": self.security_validator.sanitize_input(key, max_length=253),
                "value": self.security_validator.sanitize_input(value, max_length=1000),
            })

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "labels": self._labels(spec),
                "annotations": {"github-runner/profile": profile.name},
            },
            "spec": {
                "restartPolicy": "Never",
                "serviceAccountName": self.service_account,
                "automountServiceAccountToken": False,
                "hostNetwork": False,
                "hostPID": False,
                "hostIPC": False,
                "securityContext": {
                    "runAsNonRoot": security.run_as_non_root,
                    "runAsUser": security.run_as_user,
                    "runAsGroup": security.run_as_group,
                    "seccompProfile": {"type": security.seccomp_profile_type},
                },
                "containers": [
                    {
                        "name": CONTAINER_NAME,
                        "image": spec.image,
                        "imagePullPolicy": "IfNotPresent",
                        "securityContext": {
                            "allowPrivilegeEscalation": security.allow_privilege_escalation,
                            "capabilities": {"drop": security.capabilities_drop},
                        },
                        "resources": {
                            "requests": {
                                "cpu": profile.resources.cpu_request,
                                "memory": profile.resources.memory_request,
                            },
                            "limits": {
                                "cpu": profile.resources.cpu_limit,
                                "memory": profile.resources.memory_limit,
                            },
                        },
                        "env": env,
                    }
                ],
                "terminationGracePeriodSeconds": 30,
            },
        }

    def _labels(self, spec: ContainerSpec) -> Dict[str, str]:
        repository = spec.repository.replace("/", ".")
        if not self.security_validator.validate_label_value(repository):
            repository = self.security_validator.kubernetes_name(repository)
        return {
            "app": APP_LABEL,
            "managed-by": MANAGED_BY,
            "runner-repository": repository,
            "runner-kind": spec.kind.value,
            "runner-id": spec.instance_id,
        }

    async def _store_secret(self, secret_name: str, spec: ContainerSpec) -> None:
        body = self.build_secret_manifest(secret_name, spec)
        try:
            await self._call(self.v1.create_namespaced_secret, namespace=self.namespace, body=body)
        except ApiException as e:
            if e.status != 409:
                raise
            # Left over from an earlier attempt for the same runner name
            await self._call(self.v1.replace_namespaced_secret, name=secret_name, namespace=self.namespace, body=body)

    async def _delete_secret(self, secret_name: str, strict: bool = False) -> None:
        try:
            await self._call(self.v1.delete_namespaced_secret, name=secret_name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                return
            self.logger.warning("Failed to delete runner secret", secret_name=secret_name, status_code=e.status)
            if strict:
                raise TransientPlatformError(f"Failed to delete secret {secret_name}: {e.reason}") from e
        except TransientPlatformError:
            if strict:
                raise
            self.logger.warning("Timed out deleting runner secret", secret_name=secret_name)

    def _create_error(self, error: ApiException, resource: str) -> ContainerCreateError:
        body = str(error.body or "")
        if error.status == 403 and "exceeded quota" in body:
            failure = CreateFailure.RESOURCE_EXHAUSTED
        elif error.status in (400, 403, 409, 422):
            failure = CreateFailure.CONFIGURATION
        else:
            failure = CreateFailure.TRANSIENT

        self.logger.error(
            "Kubernetes API error creating runner",
            resource=resource,
            status_code=error.status,
            reason=error.reason,
            failure=failure.value,
        )
        return ContainerCreateError(failure, f"Failed to create {resource}: {error.reason}", status=error.status)

    async def _call(self, func: Callable[..., T], **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, **kwargs), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            name = getattr(func, "__name__", "kubernetes call")
            self.logger.warning("Kubernetes API call timed out", call=name, timeout=self.call_timeout)
            raise TransientPlatformError(f"{name} timed out after {self.call_timeout}s") from e

    @staticmethod
    def _secret_name_from_pod(pod: Any) -> Optional[str]:
        for container in (pod.spec.containers if pod.spec else None) or []:
            for env in container.env or []:
                source = getattr(env, "value_from", None)
                ref = getattr(source, "secret_key_ref", None) if source else None
                if ref is not None:
                    return ref.name
        return None

    @staticmethod
    def _encode(value: str) -> str:
        return base64.b64encode(value.encode("utf-8")).decode("ascii")
