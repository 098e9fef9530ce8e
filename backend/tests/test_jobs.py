"""
Tests for the durable job runner and the registered job handlers.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from engine.jobs import register_job_handlers
from engine.scheduler import (
    FULL_SYNC_JOB,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RETRYING,
    PROCESS_MESSAGE_JOB,
    SYNC_HISTORY_JOB,
    UNSUBSCRIBE_JOB,
    JobRunner,
)
from engine.unsubscribe import AI_UNCONFIGURED, NETWORK_FAILURE, UnsubscribeExecutor, UnsubscribeOutcome
from models import UNSUBSCRIBE_FAILED, Job, MailAccount, Message


async def seed(session_factory, last_history_id=None):
    """Create an account with one message in its own session."""
    async with session_factory() as db:
        account = MailAccount(
            user_id="user-1",
            google_id="google-1",
            email="owner@example.com",
            last_history_id=last_history_id,
        )
        db.add(account)
        await db.flush()
        message = Message(
            account_id=account.id,
            user_id="user-1",
            gmail_message_id="gm-1",
            subject="Deals",
            body="Stop: https://shop.example/unsubscribe",
        )
        db.add(message)
        await db.commit()
        return account.id, message.id


async def load_job(session_factory, job_id) -> Job:
    async with session_factory() as db:
        return await db.get(Job, job_id)


# ============================================================================
# JobRunner Tests
# ============================================================================


class TestJobRunner:
    """Tests for persistence, attempts and retry ceilings."""

    @pytest.mark.asyncio
    async def test_enqueue_persists_job(self, session_factory):
        runner = JobRunner(session_factory=session_factory)
        runner.register("noop", AsyncMock(), max_attempts=3)

        job_id = await runner.enqueue("noop", {"x": 1})

        job = await load_job(session_factory, job_id)
        assert job.kind == "noop"
        assert job.args == {"x": 1}
        assert job.state == "pending"
        assert job.max_attempts == 3

    @pytest.mark.asyncio
    async def test_unknown_kind_is_rejected(self, session_factory):
        with pytest.raises(ValueError):
            await JobRunner(session_factory=session_factory).enqueue("nope", {})

    @pytest.mark.asyncio
    async def test_handler_gets_args_and_attempt(self, session_factory):
        handler = AsyncMock()
        runner = JobRunner(session_factory=session_factory)
        runner.register("noop", handler)
        job_id = await runner.enqueue("noop", {"message_id": 5})

        assert await runner.execute_job(job_id) == JOB_COMPLETED

        _, args, attempt = handler.await_args.args
        assert args == {"message_id": 5}
        assert attempt == 1

    @pytest.mark.asyncio
    async def test_failures_retry_until_ceiling(self, session_factory):
        handler = AsyncMock(side_effect=RuntimeError("flaky"))
        runner = JobRunner(session_factory=session_factory)
        runner.register("flaky", handler, max_attempts=2)
        job_id = await runner.enqueue("flaky", {})

        assert await runner.execute_job(job_id) == JOB_RETRYING
        assert await runner.execute_job(job_id) == JOB_FAILED
        assert await runner.execute_job(job_id) == JOB_FAILED

        job = await load_job(session_factory, job_id)
        assert job.attempt == 2
        assert job.last_error == "flaky"
        assert handler.await_count == 2

    @pytest.mark.asyncio
    async def test_resume_counts_unfinished_jobs(self, session_factory):
        runner = JobRunner(session_factory=session_factory)
        runner.register("noop", AsyncMock())
        first = await runner.enqueue("noop", {})
        await runner.enqueue("noop", {})
        await runner.execute_job(first)

        assert await runner.resume_pending_jobs() == 1


# ============================================================================
# Handler Tests
# ============================================================================


def registered_runner(session_factory, mock_gmail, mock_ai, notifier, executor=None) -> JobRunner:
    runner = JobRunner(session_factory=session_factory)
    return register_job_handlers(runner, mock_gmail, mock_ai, notifier, executor=executor)


def executor_returning(outcome: UnsubscribeOutcome) -> MagicMock:
    executor = MagicMock(spec=UnsubscribeExecutor)
    executor.execute = AsyncMock(return_value=outcome)
    return executor


class TestJobHandlers:
    """Tests for the handlers bound to each job kind."""

    @pytest.mark.asyncio
    async def test_attempt_ceilings(self, session_factory, mock_gmail, mock_ai, notifier):
        runner = registered_runner(session_factory, mock_gmail, mock_ai, notifier)
        ceilings = {kind: spec.max_attempts for kind, spec in runner._handlers.items()}
        assert ceilings == {
            SYNC_HISTORY_JOB: 3,
            FULL_SYNC_JOB: 1,
            PROCESS_MESSAGE_JOB: 3,
            UNSUBSCRIBE_JOB: 2,
        }

    @pytest.mark.asyncio
    async def test_sync_history_job_adopts_cursor(self, session_factory, mock_gmail, mock_ai, notifier):
        account_id, _ = await seed(session_factory)
        runner = registered_runner(session_factory, mock_gmail, mock_ai, notifier)

        job_id = await runner.enqueue(SYNC_HISTORY_JOB, {"account_id": account_id, "history_id": 77})
        assert await runner.execute_job(job_id) == JOB_COMPLETED

        async with session_factory() as db:
            account = await db.get(MailAccount, account_id)
            assert account.last_history_id == "77"

    @pytest.mark.asyncio
    async def test_unsubscribe_failure_is_retried(self, session_factory, mock_gmail, mock_ai, notifier):
        _, message_id = await seed(session_factory)
        executor = executor_returning(UnsubscribeOutcome(UNSUBSCRIBE_FAILED, NETWORK_FAILURE))
        runner = registered_runner(session_factory, mock_gmail, mock_ai, notifier, executor)

        job_id = await runner.enqueue(UNSUBSCRIBE_JOB, {"message_id": message_id})

        assert await runner.execute_job(job_id) == JOB_RETRYING
        assert await runner.execute_job(job_id) == JOB_FAILED
        assert executor.execute.await_count == 2

        async with session_factory() as db:
            message = await db.get(Message, message_id)
            assert message.unsubscribe_status == UNSUBSCRIBE_FAILED
            assert message.unsubscribe_error == NETWORK_FAILURE

    @pytest.mark.asyncio
    async def test_unconfigured_ai_is_not_retried(self, session_factory, mock_gmail, mock_ai, notifier):
        _, message_id = await seed(session_factory)
        executor = executor_returning(UnsubscribeOutcome(UNSUBSCRIBE_FAILED, AI_UNCONFIGURED))
        runner = registered_runner(session_factory, mock_gmail, mock_ai, notifier, executor)

        job_id = await runner.enqueue(UNSUBSCRIBE_JOB, {"message_id": message_id})

        assert await runner.execute_job(job_id) == JOB_COMPLETED

    @pytest.mark.asyncio
    async def test_missing_message_completes(self, session_factory, mock_gmail, mock_ai, notifier):
        runner = registered_runner(session_factory, mock_gmail, mock_ai, notifier)

        job_id = await runner.enqueue(PROCESS_MESSAGE_JOB, {"message_id": 999})

        assert await runner.execute_job(job_id) == JOB_COMPLETED
        mock_ai.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_process_message_job_summarizes(self, session_factory, mock_gmail, mock_ai, notifier):
        _, message_id = await seed(session_factory)
        mock_ai.complete.return_value = "A weekly deals newsletter."
        runner = registered_runner(session_factory, mock_gmail, mock_ai, notifier)

        job_id = await runner.enqueue(PROCESS_MESSAGE_JOB, {"message_id": message_id})
        assert await runner.execute_job(job_id) == JOB_COMPLETED

        async with session_factory() as db:
            result = await db.execute(select(Message.summary).where(Message.id == message_id))
            assert result.scalar_one() == "A weekly deals newsletter."
