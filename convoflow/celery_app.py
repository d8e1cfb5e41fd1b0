from __future__ import annotations

"""
Celery 应用实例。

Celery 只负责动作队列的周期性维护（beat）：把可见性超时的投递重新入队、
汇报死信积压。动作本身由 ``python -m convoflow.worker`` 的 worker 池执行。

使用方式::

    celery -A convoflow.celery_app.celery_app worker -l info
    celery -A convoflow.celery_app.celery_app beat -l info
"""

from celery import Celery
from celery.signals import beat_init, worker_process_init

from convoflow.logging_config import setup_logging
from convoflow.settings import settings

celery_app = Celery(
    "convoflow",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_default_queue=settings.celery_task_default_queue,
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    imports=(
        "convoflow.tasks",
        "convoflow.tasks.action_queue",
    ),
)

# 强制立即导入任务模块，仅导入 celery_app 时（例如测试）任务也已注册。
celery_app.autodiscover_tasks(["convoflow"], force=True)
celery_app.loader.import_default_modules()


@worker_process_init.connect
def init_worker_logging(**kwargs):
    """在 Celery worker 进程初始化时配置应用日志。"""
    setup_logging()


@beat_init.connect
def init_beat_logging(**kwargs):
    setup_logging()


__all__ = ["celery_app"]
