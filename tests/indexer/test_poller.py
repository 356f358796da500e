"""Tests for the poll loop."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from src.chain.schema import ContractKind
from src.indexer.poller import PollLoop
from src.shared.db import get_db
from src.shared.db.queries import get_proposal
from src.shared.exceptions import ChainReadError


@pytest.fixture
def poll_loop(chain, scanner, checkpoint, pipeline):
    loop = PollLoop(chain, scanner, checkpoint, pipeline=pipeline, interval=0.01)
    yield loop
    loop.stop(timeout=5)


class TestPollLoop:
    def test_tick_scans_from_checkpoint(self, poll_loop, chain, checkpoint, dao_world):
        checkpoint.commit(0)
        chain.height = 4

        assert poll_loop.tick() is True
        assert checkpoint.get() == 4
        assert poll_loop.last_result.from_block == 1

    def test_tick_without_new_blocks(self, poll_loop, chain, checkpoint):
        checkpoint.commit(5)
        chain.height = 5

        poll_loop.tick()

        assert chain.queries == []
        assert checkpoint.get() == 5

    def test_tick_is_not_reentrant(self, chain, checkpoint):
        """A tick that finds another in flight is skipped."""
        entered = threading.Event()
        release = threading.Event()
        scanner = MagicMock()

        def slow_scan(*args, **kwargs):
            entered.set()
            release.wait(5)

        scanner.scan.side_effect = slow_scan
        checkpoint.commit(0)
        chain.height = 3
        loop = PollLoop(chain, scanner, checkpoint)

        worker = threading.Thread(target=loop.tick)
        worker.start()
        assert entered.wait(5)

        assert loop.tick() is False
        release.set()
        worker.join(5)
        assert scanner.scan.call_count == 1

    def test_chain_failure_propagates_from_tick(self, poll_loop, chain, checkpoint):
        checkpoint.commit(0)
        chain.fail_height = True
        with pytest.raises(ChainReadError):
            poll_loop.tick()
        assert checkpoint.get() == 0

    def test_tick_retries_failed_events(self, poll_loop, chain, checkpoint, dispatcher, dao_world):
        """Dead-lettered events are retried on the next tick."""
        info = dict(chain.dao_info)
        chain.dao_info.clear()
        checkpoint.commit(0)
        poll_loop.tick()
        assert dispatcher.failed_events(status="retry")

        chain.dao_info.update(info)
        poll_loop.tick()
        assert dispatcher.failed_events(status="resolved")

    def test_recovered_dao_gets_its_history(
        self, poll_loop, chain, checkpoint, registry, dispatcher, log_factory, addresses, session_factory, dao_world
    ):
        """Contracts registered by a retried DAOCreated are scanned behind the checkpoint."""
        chain.add(
            log_factory(
                ContractKind.GOVERNANCE,
                "ProposalCreated",
                addresses.governance,
                2,
                proposalId=1,
                proposer=addresses.alice,
                title="Fund the garden",
                startBlock=3,
                endBlock=100,
            )
        )
        info = dict(chain.dao_info)
        chain.dao_info.clear()
        checkpoint.commit(0)

        poll_loop.tick()
        assert checkpoint.get() == 2
        assert dispatcher.failed_events(status="retry")

        chain.dao_info.update(info)
        chain.height = 5
        poll_loop.tick()

        assert checkpoint.get() == 5
        with get_db(session_factory) as session:
            proposal = get_proposal(session, addresses.dao, 1)
        assert proposal["title"] == "Fund the garden"
        assert all(w.backfill_from is None for w in registry.list())

    def test_retries_run_on_pipeline_worker(self, poll_loop, pipeline, chain, checkpoint, dispatcher, dao_world):
        """With the worker running, retries are applied by it and not by the poll thread."""
        info = dict(chain.dao_info)
        chain.dao_info.clear()
        checkpoint.commit(0)
        pipeline.start()
        poll_loop.tick()
        pipeline.drain()

        threads = []
        original = dispatcher.retry_failed
        dispatcher.retry_failed = lambda: threads.append(threading.current_thread().name) or original()
        chain.dao_info.update(info)
        poll_loop.tick()
        pipeline.drain()

        assert threads == ["event-pipeline"]
        assert dispatcher.failed_events(status="resolved")

    def test_tick_syncs_listener(self, chain, scanner, checkpoint, registry, addresses):
        listener = MagicMock()
        registry.seed_factory(addresses.factory)
        checkpoint.commit(0)
        loop = PollLoop(chain, scanner, checkpoint, listener=listener, registry=registry)

        loop.tick()

        watched = listener.sync.call_args.args[0]
        assert [w.kind for w in watched] == [ContractKind.FACTORY]

    def test_background_loop_survives_failures(self, poll_loop, chain, checkpoint, dao_world):
        """The timer keeps ticking after a chain failure and catches up."""
        checkpoint.commit(0)
        chain.fail_height = True
        poll_loop.start()
        time.sleep(0.05)
        assert poll_loop.running
        assert poll_loop.last_result is None

        chain.fail_height = False
        deadline = time.monotonic() + 5
        while poll_loop.last_result is None and time.monotonic() < deadline:
            time.sleep(0.01)
        poll_loop.stop(timeout=5)

        assert not poll_loop.running
        assert checkpoint.get() == chain.height
