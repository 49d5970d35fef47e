from .pic_model import Pic
from .pic_task_model import PicTask, TaskFlag
from .ranking_model import Ranking

__all__ = [
    "Pic",
    "PicTask",
    "Ranking",
    "TaskFlag",
]
