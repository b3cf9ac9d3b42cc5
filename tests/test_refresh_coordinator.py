"""Tests for single-flight access token refresh on the client."""

import asyncio

import pytest

from authsession.client.refresh import RefreshCoordinator, RefreshFailedError, RefreshState


class ScriptedRefresh:
    """Refresh callable that blocks until released, then returns or raises."""

    def __init__(self, outcome="token-2"):
        self.outcome = outcome
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        await self.release.wait()
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


async def test_concurrent_callers_share_one_refresh():
    refresh = ScriptedRefresh()
    coordinator = RefreshCoordinator(refresh, token="token-1")

    tasks = [asyncio.create_task(coordinator.await_fresh_token("token-1")) for _ in range(5)]
    await asyncio.sleep(0)
    assert coordinator.state == RefreshState.IN_FLIGHT
    refresh.release.set()
    results = await asyncio.gather(*tasks)

    assert results == ["token-2"] * 5
    assert refresh.calls == 1
    assert coordinator.refresh_count == 1
    assert coordinator.token == "token-2"
    assert coordinator.state == RefreshState.SUCCEEDED


async def test_late_caller_with_stale_token_gets_current_token():
    refresh = ScriptedRefresh()
    refresh.release.set()
    coordinator = RefreshCoordinator(refresh, token="token-1")
    await coordinator.await_fresh_token("token-1")

    assert await coordinator.await_fresh_token("token-1") == "token-2"
    assert refresh.calls == 1


async def test_failure_rejects_every_waiter_and_notifies_once():
    lost = []
    refresh = ScriptedRefresh(outcome=RuntimeError("401 invalid_token"))
    coordinator = RefreshCoordinator(refresh, token="token-1", on_failure=lost.append)

    tasks = [asyncio.create_task(coordinator.await_fresh_token("token-1")) for _ in range(3)]
    await asyncio.sleep(0)
    refresh.release.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert all(isinstance(r, RefreshFailedError) for r in results)
    assert refresh.calls == 1
    assert len(lost) == 1
    assert not lost[0].timed_out
    assert coordinator.token is None
    assert coordinator.state == RefreshState.FAILED


async def test_late_caller_after_failure_does_not_refresh_again():
    lost = []
    refresh = ScriptedRefresh(outcome=RuntimeError("401 invalid_token"))
    refresh.release.set()
    coordinator = RefreshCoordinator(refresh, token="token-1", on_failure=lost.append)
    with pytest.raises(RefreshFailedError):
        await coordinator.await_fresh_token("token-1")

    with pytest.raises(RefreshFailedError) as excinfo:
        await coordinator.await_fresh_token("token-1")

    assert "401 invalid_token" in excinfo.value.message
    assert refresh.calls == 1
    assert coordinator.refresh_count == 1
    assert len(lost) == 1
    assert coordinator.state == RefreshState.FAILED


async def test_timeout_fails_without_retry():
    lost = []

    async def notify(error):
        lost.append(error)

    refresh = ScriptedRefresh()  # never released
    coordinator = RefreshCoordinator(refresh, timeout=0.05, on_failure=notify)

    with pytest.raises(RefreshFailedError) as excinfo:
        await coordinator.await_fresh_token()

    assert excinfo.value.timed_out
    assert refresh.calls == 1
    assert [e.timed_out for e in lost] == [True]


async def test_broken_failure_hook_does_not_mask_error():
    def explode(error):
        raise ValueError("hook bug")

    refresh = ScriptedRefresh(outcome=RuntimeError("boom"))
    refresh.release.set()
    coordinator = RefreshCoordinator(refresh, on_failure=explode)

    with pytest.raises(RefreshFailedError):
        await coordinator.await_fresh_token()


async def test_new_episode_after_failure():
    refresh = ScriptedRefresh(outcome=RuntimeError("boom"))
    refresh.release.set()
    coordinator = RefreshCoordinator(refresh)
    with pytest.raises(RefreshFailedError):
        await coordinator.await_fresh_token()

    coordinator.set_token("after-login")
    refresh.outcome = "token-3"

    assert coordinator.state == RefreshState.IDLE
    assert await coordinator.await_fresh_token("after-login") == "token-3"
    assert refresh.calls == 2
