"""Tests for the live listener."""

from dataclasses import replace

import pytest
from sqlalchemy import func, select

from src.chain.schema import ContractKind
from src.indexer.listener import LiveListener
from src.indexer.registry import WatchedContract
from src.shared.db import DAO, get_db


@pytest.fixture
def listener(chain, pipeline):
    listener = LiveListener(chain, pipeline)
    yield listener
    listener.stop()


class TestLiveListener:
    def test_start_subscribes_each_watch_once(self, listener, chain, addresses):
        factory = WatchedContract(addresses.factory, ContractKind.FACTORY)
        assert listener.start([factory, factory]) == 1
        assert listener.watch(factory) is False
        assert len(chain.subscriptions) == 1
        assert listener.watched_addresses == [addresses.factory]

    def test_live_event_is_projected(self, listener, chain, dao_world, pipeline, registry, session_factory):
        """A delivered DAOCreated goes through the pipeline into the store."""
        pipeline.start()
        listener.start(registry.list())

        chain.emit(dao_world.created)
        pipeline.drain()

        with get_db(session_factory) as session:
            assert session.execute(select(DAO.name)).scalar_one() == "Test DAO"

    def test_duplicate_delivery_tolerated(self, listener, chain, dao_world, pipeline, registry, session_factory):
        pipeline.start()
        listener.start(registry.list())

        chain.emit(dao_world.created)
        chain.emit(dao_world.created)
        pipeline.drain()

        with get_db(session_factory) as session:
            assert session.execute(select(func.count()).select_from(DAO)).scalar_one() == 1

    def test_removed_log_ignored(self, listener, chain, dao_world, pipeline, registry, session_factory):
        pipeline.start()
        listener.start(registry.list())

        chain.emit(replace(dao_world.created, removed=True))
        pipeline.drain()

        with get_db(session_factory) as session:
            assert session.execute(select(func.count()).select_from(DAO)).scalar_one() == 0

    def test_undecodable_log_ignored(self, listener, chain, dao_world, pipeline, registry, session_factory):
        pipeline.start()
        listener.start(registry.list())

        chain.emit(replace(dao_world.created, data="0x"))
        pipeline.drain()

        with get_db(session_factory) as session:
            assert session.execute(select(func.count()).select_from(DAO)).scalar_one() == 0

    def test_never_touches_checkpoint(self, listener, chain, dao_world, pipeline, registry, checkpoint):
        pipeline.start()
        listener.start(registry.list())
        chain.emit(dao_world.created)
        pipeline.drain()
        assert checkpoint.get() is None

    def test_fan_out_hook_subscribes_new_contracts(
        self, listener, chain, dao_world, pipeline, registry, dispatcher, addresses
    ):
        """New watches from DAOCreated get live subscriptions through the dispatcher hook."""
        dispatcher.add_watch_hook(listener.watch)
        pipeline.start()
        listener.start(registry.list())

        chain.emit(dao_world.created)
        pipeline.drain()

        assert sorted(listener.watched_addresses) == sorted(
            [addresses.factory, addresses.dao, addresses.governance, addresses.treasury]
        )

    def test_failed_subscribe_is_retried_by_sync(self, listener, chain, addresses):
        factory = WatchedContract(addresses.factory, ContractKind.FACTORY)
        chain.fail_subscribe = True
        assert listener.watch(factory) is False

        chain.fail_subscribe = False
        assert listener.sync([factory]) == 1

    def test_stop_unsubscribes(self, listener, chain, addresses):
        listener.start([WatchedContract(addresses.factory, ContractKind.FACTORY)])
        listener.stop()
        assert all(not sub.active for sub in chain.subscriptions)
        assert listener.watched_addresses == []
