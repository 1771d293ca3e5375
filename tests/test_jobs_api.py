"""
Job API endpoint tests.
"""

from uuid import uuid4

from jobhub.v1.jobs.models import JobErrorCode, JobStatus


class TestSubmit:
    async def test_submit_job(self, async_client, make_definition):
        await make_definition("sum", max_retries=2)

        response = await async_client.post(
            "/v1/jobs", json={"job_name": "sum", "payload": {"a": 2, "b": 3}}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        assert body["data"]["status"] == "pending"

        job_id = body["data"]["job_id"]
        job = (await async_client.get(f"/v1/jobs/{job_id}")).json()["data"]
        assert job["payload"] == {"a": 2, "b": 3}
        assert job["max_retries"] == 2
        assert job["retry_count"] == 0
        assert job["created_by"] == "alice"

    async def test_submit_copies_progress_timeout(self, async_client, make_definition):
        await make_definition("sum", progress_timeout_seconds=45)

        response = await async_client.post("/v1/jobs", json={"job_name": "sum"})

        job_id = response.json()["data"]["job_id"]
        job = (await async_client.get(f"/v1/jobs/{job_id}")).json()["data"]
        assert job["progress_timeout_seconds"] == 45

    async def test_unknown_job_rejected(self, async_client):
        response = await async_client.post("/v1/jobs", json={"job_name": "nope"})

        assert response.status_code == 422
        assert response.json()["ok"] is False
        assert "Unknown job" in response.json()["error"]["message"]

    async def test_disabled_job_rejected(self, async_client, make_definition):
        await make_definition("sum", enabled=False)

        response = await async_client.post("/v1/jobs", json={"job_name": "sum"})

        assert response.status_code == 422
        assert "disabled" in response.json()["error"]["message"]

    async def test_required_role_enforced(self, async_client, make_definition, principal):
        await make_definition("report", required_role="analyst")

        response = await async_client.post("/v1/jobs", json={"job_name": "report"})
        assert response.status_code == 403

        principal.use("carol", role="analyst")
        response = await async_client.post("/v1/jobs", json={"job_name": "report"})
        assert response.status_code == 201

    async def test_unauthenticated(self, async_client, make_definition, principal):
        await make_definition()
        principal.current = None

        response = await async_client.post("/v1/jobs", json={"job_name": "sum"})

        assert response.status_code == 401

    async def test_invalid_body(self, async_client):
        response = await async_client.post("/v1/jobs", json={"payload": {}})

        assert response.status_code == 422
        assert response.json()["error"]["message"] == "Request validation failed"


class TestQuery:
    async def test_owner_scoping(self, async_client, make_definition, make_job, principal):
        await make_definition()
        alice_job = await make_job(created_by="alice")
        bob_job = await make_job(created_by="bob")

        response = await async_client.get("/v1/jobs")
        data = response.json()["data"]
        assert data["total"] == 1
        assert data["jobs"][0]["id"] == str(alice_job.id)

        response = await async_client.get(f"/v1/jobs/{bob_job.id}")
        assert response.status_code == 404

        principal.use("root", role="admin")
        response = await async_client.get("/v1/jobs")
        assert response.json()["data"]["total"] == 2

    async def test_list_status_filter(self, async_client, make_definition, make_job, store, db_session):
        await make_definition()
        job = await make_job()
        await make_job()
        await store.update_status(db_session, job.id, JobStatus.PENDING, JobStatus.CANCELLED)

        response = await async_client.get("/v1/jobs", params={"status": ["cancelled"]})

        jobs = response.json()["data"]["jobs"]
        assert [j["id"] for j in jobs] == [str(job.id)]

    async def test_missing_job(self, async_client):
        response = await async_client.get(f"/v1/jobs/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Job not found"

    async def test_logs(self, async_client, make_definition, make_job, store, db_session):
        await make_definition()
        job = await make_job()
        await store.append_log_line(db_session, job.id, 1, "info", "hello")

        response = await async_client.get(f"/v1/jobs/{job.id}/logs")

        lines = response.json()["data"]["lines"]
        assert [(line["line_number"], line["message"]) for line in lines] == [(1, "hello")]

    async def test_logs_after_line(self, async_client, make_definition, make_job, store, db_session):
        await make_definition()
        job = await make_job()
        await store.append_log_line(db_session, job.id, 1, "info", "hello")
        await store.append_log_line(db_session, job.id, 2, "info", "world")

        response = await async_client.get(
            f"/v1/jobs/{job.id}/logs", params={"after_line": 1}
        )

        lines = response.json()["data"]["lines"]
        assert [line["message"] for line in lines] == ["world"]

    async def test_stats(self, async_client, make_definition, make_job):
        await make_definition()
        await make_job()
        await make_job()
        await make_job(created_by="bob")

        data = (await async_client.get("/v1/jobs/stats/overview")).json()["data"]

        assert data["total_jobs"] == 2
        assert data["by_status"] == {"pending": 2}
        assert data["queue_depth"] == 2


class TestControl:
    """Cancel, retry and terminate."""

    async def test_cancel_pending(self, async_client, make_definition, make_job):
        await make_definition()
        job = await make_job()

        response = await async_client.post(f"/v1/jobs/{job.id}/cancel")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "cancelled"
        assert data["error_code"] == JobErrorCode.CANCELLED.value
        assert data["completed_at"] is not None

    async def test_cancel_running(self, async_client, make_definition, make_job, claims, db_session):
        await make_definition()
        job = await make_job()
        await claims.claim_next(db_session, "w1")

        data = (await async_client.post(f"/v1/jobs/{job.id}/cancel")).json()["data"]

        assert data["status"] == "cancelled"
        assert data["worker_id"] is None

    async def test_cancel_terminal_conflicts(self, async_client, make_definition, make_job):
        await make_definition()
        job = await make_job()
        await async_client.post(f"/v1/jobs/{job.id}/cancel")

        response = await async_client.post(f"/v1/jobs/{job.id}/cancel")

        assert response.status_code == 409

    async def test_cancel_other_users_job(self, async_client, make_definition, make_job):
        await make_definition()
        job = await make_job(created_by="bob")

        response = await async_client.post(f"/v1/jobs/{job.id}/cancel")

        assert response.status_code == 404

    async def test_retry_failed_job(
        self, async_client, make_definition, make_job, claims, retry_policy, db_session
    ):
        await make_definition(max_retries=0)
        job = await make_job(max_retries=0, payload={"a": "x", "b": 1})
        claimed = await claims.claim_next(db_session, "w1")
        await retry_policy.fail(db_session, claimed, error_message="boom")

        response = await async_client.post(f"/v1/jobs/{job.id}/retry")

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["retried_from"] == str(job.id)
        assert data["job_id"] != str(job.id)

        new_job = (await async_client.get(f"/v1/jobs/{data['job_id']}")).json()["data"]
        assert new_job["status"] == "pending"
        assert new_job["payload"] == {"a": "x", "b": 1}
        assert new_job["retry_count"] == 0

    async def test_retry_requires_failed(self, async_client, make_definition, make_job):
        await make_definition()
        job = await make_job()

        response = await async_client.post(f"/v1/jobs/{job.id}/retry")

        assert response.status_code == 409

    async def test_terminate_requires_privilege(self, async_client, make_definition, make_job):
        await make_definition()
        job = await make_job()

        response = await async_client.post(f"/v1/admin/jobs/{job.id}/terminate")

        assert response.status_code == 403

    async def test_terminate_running(
        self, async_client, make_definition, make_job, claims, db_session, principal
    ):
        await make_definition()
        job = await make_job()
        await claims.claim_next(db_session, "w1")
        principal.use("root", role="admin")

        response = await async_client.post(f"/v1/admin/jobs/{job.id}/terminate")

        data = response.json()["data"]
        assert data["status"] == "cancelled"
        assert data["error_code"] == JobErrorCode.TERMINATED.value
        assert data["worker_id"] is None


class TestAdmin:
    async def test_admin_endpoints_forbidden(self, async_client):
        for path in (
            "/v1/admin/jobs/workers",
            "/v1/admin/jobs/namespaces",
            "/v1/admin/jobs/definitions",
        ):
            assert (await async_client.get(path)).status_code == 403

    async def test_list_workers(self, async_client, register_worker, store, db_session, principal):
        await register_worker("w1")
        await register_worker("w2")
        await store.mark_worker_dead(db_session, "w2")
        principal.use("root", role="admin")

        live = (await async_client.get("/v1/admin/jobs/workers", params={"include_dead": False})).json()
        everything = (await async_client.get("/v1/admin/jobs/workers")).json()

        assert [w["worker_id"] for w in live["data"]["workers"]] == ["w1"]
        assert len(everything["data"]["workers"]) == 2

    async def test_upsert_definition(self, async_client, principal, test_settings):
        principal.use("root", role="admin")
        body = {"name": "sum", "namespace": "math", "description": "Adds"}

        created = (await async_client.put("/v1/admin/jobs/definitions", json=body)).json()["data"]
        unchanged = (await async_client.put("/v1/admin/jobs/definitions", json=body)).json()["data"]
        body["timeout_seconds"] = 5
        body["progress_timeout_seconds"] = 120
        updated = (await async_client.put("/v1/admin/jobs/definitions", json=body)).json()["data"]

        assert created["outcome"] == "created"
        assert created["definition"]["timeout_seconds"] == test_settings.job_default_timeout_s
        assert created["definition"]["max_retries"] == test_settings.job_default_max_retries
        assert unchanged["outcome"] == "unchanged"
        assert updated["outcome"] == "updated"
        assert updated["definition"]["version"] == 2
        assert updated["definition"]["progress_timeout_seconds"] == 120
        assert created["definition"]["progress_timeout_seconds"] is None

        namespaces = (await async_client.get("/v1/admin/jobs/namespaces")).json()["data"]
        assert namespaces["namespaces"] == ["math"]

    async def test_sync_definitions(self, async_client, principal, make_definition):
        await make_definition("old", "etl")
        await make_definition("keep", "etl", timeout_seconds=10)
        principal.use("root", role="admin")

        response = await async_client.post(
            "/v1/admin/jobs/definitions/sync",
            json={
                "namespace": "etl",
                "definitions": [
                    {"name": "keep", "timeout_seconds": 20, "max_retries": 2},
                    {"name": "new"},
                ],
            },
        )

        summary = response.json()["data"]["summary"]
        assert summary == {"created": 1, "updated": 1, "deleted": 1, "unchanged": 0}

        definitions = (
            await async_client.get("/v1/admin/jobs/definitions", params={"namespace": "etl"})
        ).json()["data"]["definitions"]
        assert [d["name"] for d in definitions] == ["keep", "new"]

    async def test_sync_rejects_duplicates(self, async_client, principal):
        principal.use("root", role="admin")

        response = await async_client.post(
            "/v1/admin/jobs/definitions/sync",
            json={"namespace": "etl", "definitions": [{"name": "a"}, {"name": "a"}]},
        )

        assert response.status_code == 422
        assert response.json()["error"]["details"]["names"] == ["a"]
