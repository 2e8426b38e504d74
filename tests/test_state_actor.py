from __future__ import annotations

import asyncio

import pytest

from vendor_compare.services.state_actor import StateActor


@pytest.mark.asyncio
async def test_mutations_are_applied_in_submission_order():
    actor = StateActor([])

    await asyncio.gather(*(actor.apply(lambda s, i=i: s.append(i)) for i in range(20)))

    assert actor.peek() == list(range(20))
    await actor.stop()


@pytest.mark.asyncio
async def test_mutation_error_reaches_the_caller_and_actor_keeps_running():
    actor = StateActor({"count": 0})

    def explode(state):
        raise ValueError("bad mutation")

    with pytest.raises(ValueError):
        await actor.apply(explode)

    result = await actor.apply(lambda s: s.update(count=s["count"] + 1) or s["count"])
    assert result == 1
    await actor.stop()


@pytest.mark.asyncio
async def test_snapshot_is_a_copy():
    actor = StateActor({"items": [1]})

    snapshot = await actor.snapshot()
    snapshot["items"].append(2)

    assert actor.peek() == {"items": [1]}
    await actor.stop()


@pytest.mark.asyncio
async def test_replace_swaps_state():
    actor = StateActor({"old": True})

    await actor.replace({"new": True})

    assert actor.peek() == {"new": True}
    await actor.stop()
