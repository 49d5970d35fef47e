from enum import Enum
from typing import Optional

from tortoise import fields, models


class TaskFlag(str, Enum):
    ILLUST_RECOMMEND = "illust_recommend"
    AUTHOR_RECOMMEND = "author_recommend"
    DETAIL_INFO = "detail_info"

    @property
    def crawled_field(self) -> str:
        return f"{self.value}_crawled"

    @property
    def time_field(self) -> str:
        return f"{self.value}_time"

    @property
    def count_field(self) -> Optional[str]:
        if self is TaskFlag.DETAIL_INFO:
            return None
        return f"{self.value}_count"

    @property
    def action(self) -> str:
        """Worker endpoint action that completes this flag."""
        return {
            TaskFlag.ILLUST_RECOMMEND: "illust-recommend-pids",
            TaskFlag.AUTHOR_RECOMMEND: "author-recommend-pids",
            TaskFlag.DETAIL_INFO: "pid-detail-info",
        }[self]


class PicTask(models.Model):
    """
    Completion state of the three background crawl steps for one artwork.
    Flags only ever go from false to true.
    """
    pid = fields.CharField(max_length=32, pk=True)

    illust_recommend_crawled = fields.BooleanField(default=False, index=True)
    illust_recommend_count = fields.IntField(default=0)
    illust_recommend_time = fields.DatetimeField(null=True)

    author_recommend_crawled = fields.BooleanField(default=False, index=True)
    author_recommend_count = fields.IntField(default=0)
    author_recommend_time = fields.DatetimeField(null=True)

    detail_info_crawled = fields.BooleanField(default=False, index=True)
    detail_info_time = fields.DatetimeField(null=True)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True, index=True)

    class Meta:
        table = "pic_task"
