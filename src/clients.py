"""
REST API client for the compute provider (Compute Engine, Deployment Manager
and Cloud Storage).
"""

import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

import google.auth
from google.auth.transport.requests import AuthorizedSession

from deployment_doc import FLEET_LABEL, TEMPLATE_LABEL, label_value
from errors import ErrorKind, ProviderError, kind_for_status
from models import DeploymentOperation, DeploymentStatus, OperationState
from retry import ExecutionEngine, RetryStrategy

logger = logging.getLogger(__name__)

COMPUTE_API = "https://compute.googleapis.com/compute/v1"
DEPLOYMENT_API = "https://deploymentmanager.googleapis.com/deploymentmanager/v2"
STORAGE_API = "https://storage.googleapis.com/storage/v1"
UPLOAD_API = "https://storage.googleapis.com/upload/storage/v1"

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as returned by the APIs."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ComputeRestClient:
    """REST client for one project and zone."""

    def __init__(
        self,
        project_id: str,
        zone: str,
        engine: ExecutionEngine,
        credentials=None,
        timeout_s: int = 60,
        operation_timeout_s: int = 600,
    ):
        """
        Initialize the compute REST client.

        Args:
            project_id: GCP project ID
            zone: Compute zone (e.g., 'europe-west2-a')
            engine: Execution engine every call is retried through
            credentials: google-auth credentials; application default
                credentials when omitted
            timeout_s: Request timeout in seconds
            operation_timeout_s: Upper bound when waiting on a zone operation
        """
        self.project_id = project_id
        self.zone = zone
        self.engine = engine
        self.timeout_s = timeout_s
        self.operation_timeout_s = operation_timeout_s

        if credentials is None:
            credentials, _ = google.auth.default(scopes=SCOPES)
        self.session = AuthorizedSession(credentials)

    @property
    def region(self) -> str:
        return self.zone.rsplit("-", 1)[0]

    def _zone_url(self, path: str = "") -> str:
        base = f"{COMPUTE_API}/projects/{self.project_id}/zones/{self.zone}"
        return f"{base}/{path.lstrip('/')}" if path else base

    def _deployments_url(self, path: str = "") -> str:
        base = f"{DEPLOYMENT_API}/projects/{self.project_id}/global/deployments"
        return f"{base}/{path.lstrip('/')}" if path else base

    def _request(self, method: str, url: str, **kwargs) -> Dict:
        """
        Execute one HTTP request.

        Returns:
            Decoded JSON body, empty dict when there is none

        Raises:
            ProviderError: For any non-2xx response, classified by status code
        """
        resp = self.session.request(method, url, timeout=self.timeout_s, **kwargs)
        if resp.status_code >= 400:
            message = resp.text[:200]
            try:
                message = resp.json().get("error", {}).get("message", message)
            except ValueError:
                pass
            raise ProviderError(
                f"{method} {url} failed ({resp.status_code}): {message}",
                kind_for_status(resp.status_code),
                resp.status_code,
            )
        if not resp.content:
            return {}
        return resp.json()

    def _call(
        self,
        method: str,
        url: str,
        strategy: Optional[RetryStrategy] = None,
        **kwargs,
    ) -> Dict:
        return self.engine.execute_with_retry(
            lambda: self._request(method, url, **kwargs), strategy
        )

    def _list(self, url: str, key: str, params: Optional[Dict] = None) -> List[Dict]:
        items: List[Dict] = []
        page_token: Optional[str] = None

        while True:
            page_params = dict(params or {})
            if page_token:
                page_params["pageToken"] = page_token

            data = self._call("GET", url, params=page_params)
            items.extend(data.get(key, []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return items

    def wait_zone_operation(self, operation: Dict) -> Dict:
        """
        Block until a zone operation is DONE.

        Raises:
            ProviderError: If the operation finishes with errors or runs
                past the operation timeout
        """
        name = operation.get("name")
        if not name:
            return operation

        deadline = time.monotonic() + self.operation_timeout_s
        while operation.get("status") != "DONE":
            if time.monotonic() > deadline:
                raise ProviderError(
                    f"Operation {name} did not finish within {self.operation_timeout_s}s",
                    ErrorKind.TRANSIENT,
                )
            operation = self._call("POST", self._zone_url(f"operations/{name}/wait"))

        errors = operation.get("error", {}).get("errors", [])
        if errors:
            raise ProviderError(
                f"Operation {name} failed: "
                + "; ".join(e.get("message", e.get("code", "")) for e in errors),
                ErrorKind.FATAL,
            )
        return operation

    # Deployments

    def create_deployment(
        self, deployment_name: str, content: str, labels: Dict[str, str]
    ) -> Dict:
        """
        Submit a batched deployment.

        Args:
            deployment_name: Unique deployment name
            content: Rendered deployment configuration
            labels: Labels attached to the deployment itself

        Returns:
            The insert operation; the deployment keeps running remotely
        """
        body = {
            "name": deployment_name,
            "target": {"config": {"content": content}},
            "labels": [{"key": k, "value": v} for k, v in labels.items()],
        }
        op = self._call("POST", self._deployments_url(), json=body)
        logger.info(f"Deployment {deployment_name} submitted (operation {op.get('name', 'N/A')})")
        return op

    def get_deployment(self, deployment_name: str) -> Optional[DeploymentStatus]:
        """
        Get a deployment's creation time and overall state.

        Returns:
            DeploymentStatus, or None if the deployment no longer exists
        """
        try:
            data = self._call("GET", self._deployments_url(deployment_name))
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

        operation = data.get("operation", {})
        errors = operation.get("error", {}).get("errors", [])
        if errors:
            state = OperationState.FAILED
        elif operation.get("status") == "DONE":
            state = OperationState.SUCCEEDED
        else:
            state = OperationState.IN_PROGRESS

        return DeploymentStatus(
            name=deployment_name,
            insert_time=parse_timestamp(data["insertTime"]),
            state=state,
            message="; ".join(e.get("message", "") for e in errors),
        )

    def delete_deployment(self, deployment_name: str) -> bool:
        """
        Delete a deployment record, abandoning the resources it created.

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            self._call(
                "DELETE",
                self._deployments_url(deployment_name),
                params={"deletePolicy": "ABANDON"},
            )
        except ProviderError as e:
            if e.is_not_found:
                return False
            raise
        logger.info(f"Deleted deployment {deployment_name}")
        return True

    def list_deployment_operations(self, deployment_name: str) -> List[DeploymentOperation]:
        """
        List per-resource state inside a deployment.

        A resource with a pending update reports that update's state; a
        resource that has a URL and no pending update has been created.
        """
        resources = self._list(self._deployments_url(f"{deployment_name}/resources"), "resources")

        operations = []
        for item in resources:
            update = item.get("update")
            if update:
                state = update.get("state", "PENDING")
                errors = update.get("error", {}).get("errors", [])
                message = "; ".join(e.get("message", "") for e in errors)
            elif item.get("url"):
                state, message = "SUCCEEDED", ""
            else:
                state, message = "PENDING", ""
            operations.append(
                DeploymentOperation(
                    resource_name=item.get("name", ""),
                    resource_type=item.get("type", ""),
                    state=state,
                    status_message=message,
                )
            )
        return operations

    # Instances

    def get_vm(self, vm_name: str) -> Optional[Dict]:
        """Get an instance, or None if it does not exist."""
        try:
            return self._call("GET", self._zone_url(f"instances/{vm_name}"))
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    def start_vm(self, vm_name: str) -> None:
        op = self._call("POST", self._zone_url(f"instances/{vm_name}/start"))
        self.wait_zone_operation(op)

    def stop_vm(self, vm_name: str) -> None:
        op = self._call("POST", self._zone_url(f"instances/{vm_name}/stop"))
        self.wait_zone_operation(op)

    def delete_vm(self, vm_name: str) -> bool:
        """
        Delete an instance and wait for it to go.

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            op = self._call("DELETE", self._zone_url(f"instances/{vm_name}"))
            self.wait_zone_operation(op)
        except ProviderError as e:
            if e.is_not_found:
                return False
            raise
        logger.info(f"Deleted VM {vm_name}")
        return True

    def delete_address(self, address_name: str, strategy: Optional[RetryStrategy] = None) -> bool:
        """Release a static address; not-found counts as already released."""
        url = (
            f"{COMPUTE_API}/projects/{self.project_id}/regions/{self.region}"
            f"/addresses/{address_name}"
        )
        try:
            self._call("DELETE", url, strategy)
        except ProviderError as e:
            if e.is_not_found:
                return False
            raise
        logger.info(f"Released address {address_name}")
        return True

    def list_vms(self, fleet_name: str) -> List[Dict]:
        """List every instance labelled with a fleet name."""
        params = {"filter": f"labels.{FLEET_LABEL}={label_value(fleet_name)}"}
        return self._list(self._zone_url("instances"), "items", params)

    def count_vms_by_template(self, fleet_name: str) -> Dict[str, int]:
        """Count a fleet's instances per template label."""
        counts: Dict[str, int] = {}
        for vm in self.list_vms(fleet_name):
            template = vm.get("labels", {}).get(TEMPLATE_LABEL, "")
            counts[template] = counts.get(template, 0) + 1
        return counts

    # Verification lookups

    def verify_project(self) -> None:
        """Raise unless the credentials can read the project."""
        self._call("GET", f"{COMPUTE_API}/projects/{self.project_id}")

    def _exists(self, url: str) -> bool:
        try:
            self._call("GET", url)
        except ProviderError as e:
            if e.is_not_found:
                return False
            raise
        return True

    def image_exists(self, image: str) -> bool:
        """
        Check an image reference.

        Accepts a full path (``projects/<p>/global/images/...``) or a bare
        image name in this project.
        """
        path = image if image.startswith("projects/") else (
            f"projects/{self.project_id}/global/images/{image}"
        )
        return self._exists(f"{COMPUTE_API}/{path}")

    def subnet_exists(self, subnet: str) -> bool:
        path = subnet if subnet.startswith("projects/") else (
            f"projects/{self.project_id}/regions/{self.region}/subnetworks/{subnet}"
        )
        return self._exists(f"{COMPUTE_API}/{path}")

    def bucket_status(self, bucket: str) -> str:
        """
        Classify a bucket name.

        Returns:
            'owned' if readable, 'available' if it does not exist, 'taken'
            if it exists under someone else
        """
        try:
            self._call("GET", f"{STORAGE_API}/b/{bucket}")
        except ProviderError as e:
            if e.is_not_found:
                return "available"
            if e.status_code == 403:
                return "taken"
            raise
        return "owned"

    # Script staging

    def create_bucket(self, bucket: str) -> None:
        self._call(
            "POST",
            f"{STORAGE_API}/b",
            params={"project": self.project_id},
            json={"name": bucket, "location": self.region},
        )
        logger.info(f"Created bucket {bucket} in {self.region}")

    def upload_object(self, bucket: str, object_name: str, data: str) -> str:
        """
        Upload a text object.

        Returns:
            The object's gs:// URI
        """
        self._call(
            "POST",
            f"{UPLOAD_API}/b/{bucket}/o",
            params={"uploadType": "media", "name": object_name},
            data=data.encode("utf-8"),
            headers={"Content-Type": "text/plain"},
        )
        uri = f"gs://{bucket}/{object_name}"
        logger.debug(f"Uploaded {uri}")
        return uri

    def delete_object(self, uri: str) -> bool:
        """Delete a gs:// object; not-found counts as already deleted."""
        if not uri.startswith("gs://"):
            raise ValueError(f"Not a gs:// URI: {uri}")
        bucket, _, object_name = uri[len("gs://"):].partition("/")
        try:
            self._call("DELETE", f"{STORAGE_API}/b/{bucket}/o/{quote(object_name, safe='')}")
        except ProviderError as e:
            if e.is_not_found:
                return False
            raise
        logger.debug(f"Deleted {uri}")
        return True
