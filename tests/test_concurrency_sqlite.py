"""
Colliding writers on a file-backed SQLite database.

SQLite has no row locks; a second writer fails with "database is locked",
which must surface as ContentionError and leave the list untouched.

Run with: pytest tests/test_concurrency_sqlite.py -v
"""

import random
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from listkeeper import ContentionError
from listkeeper.db.base import Base
from listkeeper.db.session import build_engine, build_session_maker, session_scope
from support_models import ListMixin, list_mixins


WORKERS = 4


@pytest.fixture
def file_maker(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'lists.db'}")
    Base.metadata.create_all(engine)
    maker = build_session_maker(engine)
    with session_scope(maker) as session:
        for _ in range(5):
            session.add(ListMixin(parent_id=1))
            session.flush()
    yield maker
    engine.dispose()


def stored_order(maker):
    with maker() as session:
        rows = session.execute(
            select(ListMixin.id, ListMixin.pos)
            .where(ListMixin.parent_id == 1, ListMixin.pos.is_not(None))
            .order_by(ListMixin.pos, ListMixin.id)
        ).all()
    return [ident for ident, _pos in rows], [pos for _ident, pos in rows]


def test_second_writer_gets_contention_error(file_maker):
    member_ids, _positions = stored_order(file_maker)

    holder = file_maker()
    waiter = file_maker()
    try:
        with holder.begin():
            assert list_mixins.move_to_top(holder, holder.get(ListMixin, member_ids[-1])) is True

            item = waiter.get(ListMixin, member_ids[0])
            with pytest.raises(ContentionError) as exc_info:
                list_mixins.move_to_bottom(waiter, item)

            assert exc_info.value.retryable is True
            assert exc_info.value.details["scope"] == {"parent_id": 1}
            assert exc_info.value.details["id"] == member_ids[0]
            assert item.pos == 1
            waiter.rollback()

        assert stored_order(file_maker) == ([member_ids[-1]] + member_ids[:-1], [1, 2, 3, 4, 5])

        # the write lock is gone once the holder commits
        with waiter.begin():
            assert list_mixins.move_to_bottom(waiter, waiter.get(ListMixin, member_ids[0])) is True
    finally:
        holder.close()
        waiter.close()

    assert stored_order(file_maker) == ([member_ids[-1]] + member_ids[1:-1] + member_ids[:1], [1, 2, 3, 4, 5])


def test_threaded_moves_with_retry_keep_a_permutation(file_maker):
    member_ids, _positions = stored_order(file_maker)
    operations = [list_mixins.move_to_top, list_mixins.move_to_bottom, list_mixins.move_higher, list_mixins.move_lower]
    collisions = []

    def shuffle(seed_value):
        chooser = random.Random(seed_value)

        def run():
            with session_scope(file_maker) as session:
                item = session.get(ListMixin, chooser.choice(member_ids))
                chooser.choice(operations)(session, item)

        for _ in range(5):
            for attempt in range(50):
                try:
                    run()
                    break
                except ContentionError:
                    collisions.append(seed_value)
                    time.sleep(0.005 * (attempt + 1))
            else:
                raise AssertionError("move never acquired the database write lock")

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        list(pool.map(shuffle, range(WORKERS)))

    ids_after, positions = stored_order(file_maker)
    assert positions == [1, 2, 3, 4, 5]
    assert sorted(ids_after) == sorted(member_ids)
