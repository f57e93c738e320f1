from __future__ import annotations

import pytest

from lexhost.core.errors import ConflictError, InvalidInputError, NotFoundError
from lexhost.persistence.db import SessionLocal
from lexhost.services import admins, backfill
from lexhost.tests.utils.lexicons import ADMIN_SECRET, CALLER_DID, record_lexicon, store_lexicon


@pytest.mark.asyncio
async def test_backfill_without_enabled_lexicons_is_recorded_as_failed() -> None:
    await store_lexicon(record_lexicon("com.example.note"))
    async with SessionLocal() as session:
        job = await backfill.create_backfill_job(session)
    assert job.status == backfill.STATUS_FAILED
    assert job.error == backfill.NO_BACKFILL_LEXICONS
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_backfill_job_progress_lifecycle() -> None:
    await store_lexicon(record_lexicon("com.example.note"), backfill=True)
    async with SessionLocal() as session:
        job = await backfill.create_backfill_job(session, did=CALLER_DID)
        assert job.status == backfill.STATUS_PENDING
        job_id = job.id

        running = await backfill.update_backfill_progress(session, job_id, status="running", total_repos=4)
        assert running.started_at is not None
        progressed = await backfill.update_backfill_progress(
            session, job_id, processed_repos=2, total_records=17
        )
        assert progressed.status == backfill.STATUS_RUNNING
        assert progressed.total_repos == 4
        done = await backfill.update_backfill_progress(session, job_id, status="completed", processed_repos=4)
        assert done.completed_at is not None

        with pytest.raises(ConflictError):
            await backfill.update_backfill_progress(session, job_id, processed_repos=5)

    async with SessionLocal() as session:
        stored = await backfill.get_backfill_job(session, job_id)
    assert stored.status == backfill.STATUS_COMPLETED
    assert stored.processed_repos == 4
    assert stored.total_records == 17


@pytest.mark.asyncio
async def test_backfill_rejects_invalid_targets_and_transitions() -> None:
    async with SessionLocal() as session:
        with pytest.raises(InvalidInputError):
            await backfill.create_backfill_job(session, collection="not an nsid")
        with pytest.raises(InvalidInputError):
            await backfill.create_backfill_job(session, did="alice")
        job = await backfill.create_backfill_job(session, collection="com.example.note")
        with pytest.raises(ConflictError):
            await backfill.update_backfill_progress(session, job.id, status="completed")


@pytest.mark.asyncio
async def test_backfill_jobs_list_newest_first_and_delete() -> None:
    async with SessionLocal() as session:
        first = await backfill.create_backfill_job(session, collection="com.example.one")
        second = await backfill.create_backfill_job(session, collection="com.example.two")
        jobs = await backfill.list_backfill_jobs(session)
        assert [job.id for job in jobs] == [second.id, first.id]

        await backfill.delete_backfill_job(session, first.id)
        with pytest.raises(NotFoundError):
            await backfill.get_backfill_job(session, first.id)
        with pytest.raises(NotFoundError):
            await backfill.delete_backfill_job(session, first.id)


@pytest.mark.asyncio
async def test_admin_keys_authenticate_and_are_stored_hashed() -> None:
    async with SessionLocal() as session:
        created = await admins.create_admin(session, name="ops")
        assert created.api_key.startswith("lxa_")
        assert created.admin.api_key_hash != created.api_key
        assert created.admin.api_key_hash == admins.hash_api_key(created.api_key)

        principal = await admins.authenticate(session, created.api_key)
        assert principal == admins.AdminPrincipal(admin_id=created.admin.id, name="ops")
        assert await admins.authenticate(session, "lxa_wrong") is None
        assert await admins.authenticate(session, "") is None


@pytest.mark.asyncio
async def test_admin_secret_is_a_fallback_credential() -> None:
    async with SessionLocal() as session:
        principal = await admins.authenticate(session, ADMIN_SECRET)
    assert principal is not None
    assert principal.admin_id is None
    assert principal.name == admins.BOOTSTRAP_ADMIN_NAME


@pytest.mark.asyncio
async def test_bootstrap_admin_runs_once() -> None:
    async with SessionLocal() as session:
        seeded = await admins.bootstrap_admin(session)
        assert seeded is not None
        assert await admins.bootstrap_admin(session) is None
        listed = await admins.list_admins(session)
        assert [row.name for row in listed] == [admins.BOOTSTRAP_ADMIN_NAME]
        principal = await admins.authenticate(session, ADMIN_SECRET)
        assert principal is not None
        assert principal.admin_id == seeded.id


@pytest.mark.asyncio
async def test_delete_admin() -> None:
    async with SessionLocal() as session:
        created = await admins.create_admin(session, name="temp")
        await admins.delete_admin(session, created.admin.id)
        assert await admins.authenticate(session, created.api_key) is None
        with pytest.raises(NotFoundError):
            await admins.delete_admin(session, created.admin.id)
