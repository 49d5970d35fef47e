import pytest
from tortoise.exceptions import OperationalError

from pixiv_crawler.exceptions import PersistenceError
from pixiv_crawler.storage.models import Pic, PicTask, TaskFlag
from pixiv_crawler.storage.task_state_manager import TaskStateManager


pytestmark = pytest.mark.anyio


async def test_batch_create_collapses_duplicate_ids(db):
    manager = TaskStateManager()

    created = await manager.batch_create(["1", "1", "2"])

    assert created == 2
    assert sorted(await PicTask.all().values_list("pid", flat=True)) == ["1", "2"]


async def test_batch_create_does_not_reset_existing_flags(db):
    manager = TaskStateManager()
    await manager.create_or_update("1")
    await manager.update_flag("1", TaskFlag.DETAIL_INFO)

    await manager.batch_create(["1", "2"])
    await manager.create_or_update("1")

    task = await manager.get_one("1")
    assert task.detail_info_crawled is True
    assert await PicTask.all().count() == 2


async def test_update_flag_sets_only_the_named_flag(db):
    manager = TaskStateManager()
    await manager.create_or_update("42")

    await manager.update_flag("42", "illust_recommend", count=5)

    task = await manager.get_one("42")
    assert task.illust_recommend_crawled is True
    assert task.illust_recommend_count == 5
    assert task.illust_recommend_time is not None
    assert task.author_recommend_crawled is False
    assert task.detail_info_crawled is False


async def test_update_flag_creates_missing_row(db):
    manager = TaskStateManager()

    await manager.update_flag("7", TaskFlag.AUTHOR_RECOMMEND, count=3)

    task = await manager.get_one("7")
    assert task.author_recommend_crawled is True
    assert task.author_recommend_count == 3


async def test_update_flag_propagates_write_errors(monkeypatch):
    class FailingQuery:
        async def update(self, **kwargs):
            raise OperationalError("permission denied for table pic_task")

    monkeypatch.setattr(PicTask, "filter", lambda *args, **kwargs: FailingQuery())

    with pytest.raises(PersistenceError) as excinfo:
        await TaskStateManager().update_flag("1", TaskFlag.DETAIL_INFO)

    assert excinfo.value.pid == "1"


async def test_get_one_missing_returns_none(db):
    assert await TaskStateManager().get_one("404") is None


async def test_list_uncompleted_never_returns_completed_pids(db):
    manager = TaskStateManager(page_size=2)
    await manager.batch_create([str(i) for i in range(1, 8)])
    for pid in ("2", "3", "6"):
        await manager.update_flag(pid, TaskFlag.DETAIL_INFO)

    pids = await manager.list_uncompleted("detail_info", 5)

    assert sorted(pids) == ["1", "4", "5", "7"]
    assert len(await manager.list_uncompleted(TaskFlag.DETAIL_INFO, 2)) == 2
    assert await manager.list_uncompleted(TaskFlag.DETAIL_INFO, 0) == []


async def test_list_uncompleted_oldest_update_first(db):
    manager = TaskStateManager()
    await manager.batch_create(["1", "2", "3"])
    # Touching "1" moves it behind the untouched rows.
    await manager.update_flag("1", TaskFlag.DETAIL_INFO)

    pids = await manager.list_uncompleted(TaskFlag.ILLUST_RECOMMEND, 3)

    assert pids[-1] == "1"


async def test_list_uncompleted_pages_past_filtered_rows(db):
    manager = TaskStateManager(page_size=2)
    await manager.batch_create([str(i) for i in range(1, 7)])
    await Pic.create(pid="1", popularity=0.1)
    await Pic.create(pid="5", popularity=0.5)
    await Pic.create(pid="6", popularity=0.3)

    pids = await manager.list_uncompleted(
        TaskFlag.ILLUST_RECOMMEND, 2, min_popularity=0.3
    )

    assert sorted(pids) == ["5", "6"]


async def test_count_uncompleted(db):
    manager = TaskStateManager()
    await manager.batch_create(["1", "2", "3"])
    await manager.update_flag("2", TaskFlag.AUTHOR_RECOMMEND, count=0)

    assert await manager.count_uncompleted(TaskFlag.AUTHOR_RECOMMEND) == 2
    assert await manager.count_uncompleted(TaskFlag.DETAIL_INFO) == 3


async def test_sample_known_pids(db):
    manager = TaskStateManager()
    assert await manager.sample_known_pids(5) == []

    await manager.batch_create([str(i) for i in range(20)])
    sample = await manager.sample_known_pids(5)

    assert len(sample) == 5
    assert len(set(sample)) == 5
    assert set(sample) <= {str(i) for i in range(20)}
