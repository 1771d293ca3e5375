"""API Endpoint Wrappers - Typed API calls"""

from typing import Any

from .base import APIClient, JobhubError
from ..utils.config_manager import config

__all__ = ["JobhubClient", "JobhubError"]


class JobhubClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None
    ):
        # Use config values if not provided
        api_config = config.load_config().get("api", {})
        final_base_url = base_url or api_config.get("base_url", "http://localhost:8000")
        final_headers = headers or self._identity_headers(api_config)

        self.api = APIClient(
            base_url=final_base_url,
            timeout=api_config.get("timeout", 30),
            headers=final_headers
        )

    @staticmethod
    def _identity_headers(api_config: dict[str, Any]) -> dict[str, str]:
        """Caller identity headers for dev auth mode"""
        headers = dict(api_config.get("headers", {}) or {})
        identity = {
            "X-User-ID": api_config.get("user_id"),
            "X-User-Role": api_config.get("role"),
            "X-User-Email": api_config.get("email"),
        }
        headers.update({k: str(v) for k, v in identity.items() if v})
        return headers

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Job Endpoints
    def submit_job(
        self,
        job_name: str,
        namespace: str = "default",
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        scheduled_at: str | None = None,
    ) -> dict[str, Any]:
        """Submit a job"""
        data: dict[str, Any] = {
            "job_name": job_name,
            "namespace": namespace,
            "payload": payload or {},
            "priority": priority,
        }
        if scheduled_at:
            data["scheduled_at"] = scheduled_at
        return self.api.post("/jobs", data)

    def list_jobs(
        self,
        status: list[str] | None = None,
        namespace: str | None = None,
        job_name: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if namespace:
            params["namespace"] = namespace
        if job_name:
            params["job_name"] = job_name
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        """Get specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def get_job_logs(self, job_id: str, after_line: int | None = None) -> dict[str, Any]:
        """Get console lines of a job, optionally only those after a line number"""
        params = {"after_line": after_line} if after_line else None
        return self.api.get(f"/jobs/{job_id}/logs", params)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        """Cancel a pending or running job"""
        return self.api.post(f"/jobs/{job_id}/cancel")

    def retry_job(self, job_id: str) -> dict[str, Any]:
        """Resubmit a failed job"""
        return self.api.post(f"/jobs/{job_id}/retry")

    def get_job_stats(self) -> dict[str, Any]:
        """Get job statistics"""
        return self.api.get("/jobs/stats/overview")

    # Admin Endpoints
    def list_workers(self, include_dead: bool = True) -> dict[str, Any]:
        """List registered workers"""
        return self.api.get("/admin/jobs/workers", {"include_dead": include_dead})

    def terminate_job(self, job_id: str) -> dict[str, Any]:
        """Force-reclaim a job"""
        return self.api.post(f"/admin/jobs/{job_id}/terminate")

    def list_namespaces(self) -> dict[str, Any]:
        """List namespaces with job definitions"""
        return self.api.get("/admin/jobs/namespaces")

    def list_definitions(self, namespace: str | None = None) -> dict[str, Any]:
        """List job definitions"""
        params = {"namespace": namespace} if namespace else None
        return self.api.get("/admin/jobs/definitions", params)

    def upsert_definition(self, definition: dict[str, Any]) -> dict[str, Any]:
        """Create or update a job definition"""
        return self.api.put("/admin/jobs/definitions", definition)

    def sync_definitions(
        self,
        namespace: str,
        definitions: list[dict[str, Any]],
        delete_missing: bool = True,
    ) -> dict[str, Any]:
        """Replace the definitions of a namespace"""
        data = {
            "namespace": namespace,
            "definitions": definitions,
            "delete_missing": delete_missing,
        }
        return self.api.post("/admin/jobs/definitions/sync", data)
