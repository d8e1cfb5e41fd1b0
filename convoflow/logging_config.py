"""
日志配置

所有模块共用 ``convoflow`` logger；文件按天分目录、按业务分文件::

    logs/2025-01-02/turns.log      编排器 / 取消
    logs/2025-01-02/actions.log    账本 / 队列 / 分发 / worker / 工具
    logs/2025-01-02/inference.log
    logs/2025-01-02/access.log     uvicorn.access
"""

import datetime
import logging
import shutil
from pathlib import Path
from typing import Callable, TextIO
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings

LOGGER_NAME = "convoflow"

_configured = False


def _resolve_tzinfo(timezone_name: str | None) -> datetime.tzinfo:
    if timezone_name:
        try:
            return ZoneInfo(timezone_name)
        except ZoneInfoNotFoundError:
            pass
    return datetime.datetime.now().astimezone().tzinfo or datetime.UTC


class LocalTimezoneFormatter(logging.Formatter):
    """Render %(asctime)s in LOG_TIMEZONE (system local time when unset or invalid)."""

    def __init__(self, *args, timezone_name: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._tzinfo = _resolve_tzinfo(timezone_name)

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self._tzinfo)
        return stamp.strftime(datefmt) if datefmt else stamp.isoformat(timespec="milliseconds")


# 调用方路径片段 -> 业务日志文件名；按顺序匹配，先命中者优先。
_BUSINESS_BY_PATH: tuple[tuple[str, str], ...] = (
    ("/convoflow/services/orchestrator.py", "turns"),
    ("/convoflow/services/turn_cancel_service.py", "turns"),
    ("/convoflow/services/action_", "actions"),
    ("/convoflow/services/idempotency_ledger.py", "actions"),
    ("/convoflow/services/tool_registry.py", "actions"),
    ("/convoflow/worker.py", "actions"),
    ("/convoflow/services/inference_gateway.py", "inference"),
    ("/convoflow/services/session_store.py", "sessions"),
    ("/convoflow/db/", "sessions"),
    ("/convoflow/services/event_emitter.py", "events"),
    ("/convoflow/tasks/", "tasks"),
    ("/convoflow/celery_app.py", "tasks"),
    ("/convoflow/api/", "api"),
    ("/convoflow/routes.py", "api"),
)


def infer_log_business(record: logging.LogRecord) -> str:
    """
    把一条日志归到业务桶。

    大部分模块都用同一个 ``convoflow`` logger，record.name 区分不了业务，
    所以按调用方的文件路径判断。
    """
    name = record.name or ""
    if name.startswith("uvicorn.access"):
        return "access"
    if name.startswith("uvicorn"):
        return "server"
    if name.startswith("celery"):
        return "tasks"

    path = (record.pathname or "").replace("\\", "/")
    return next((biz for fragment, biz in _BUSINESS_BY_PATH if fragment in path), "app")


class _DailyFolderHandler(logging.Handler):
    """
    <log_dir>/<YYYY-MM-DD>/<file> 形式的按天滚动；只保留最近 backup_days 个日期目录。
    子类决定每条记录写进哪个文件。
    """

    def __init__(
        self,
        log_dir: Path,
        backup_days: int = 7,
        encoding: str = "utf-8",
        timezone_name: str | None = None,
        now_fn: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        super().__init__()
        self.log_dir = log_dir
        self.backup_days = backup_days
        self.encoding = encoding
        self._tzinfo = _resolve_tzinfo(timezone_name)
        self._now_fn = now_fn or (lambda: datetime.datetime.now(tz=self._tzinfo))
        self._day: datetime.date | None = None
        self._files: dict[str, TextIO] = {}

    def _filename_for(self, record: logging.LogRecord) -> str:
        raise NotImplementedError

    def _close_files(self) -> None:
        for fh in self._files.values():
            try:
                fh.close()
            except OSError:
                pass
        self._files = {}

    def _prune(self) -> None:
        if self.backup_days <= 0:
            return
        days: list[tuple[datetime.date, Path]] = []
        try:
            for child in self.log_dir.iterdir():
                try:
                    days.append((datetime.date.fromisoformat(child.name), child))
                except ValueError:
                    continue
        except OSError:
            return
        days.sort()
        for _, stale in days[: -self.backup_days]:
            shutil.rmtree(stale, ignore_errors=True)

    def _file(self, filename: str) -> TextIO:
        now = self._now_fn()
        if now.tzinfo is None:
            now = now.replace(tzinfo=self._tzinfo)
        today = now.date()
        if today != self._day:
            self._close_files()
            self._day = today
            (self.log_dir / today.isoformat()).mkdir(parents=True, exist_ok=True)
            self._prune()
        fh = self._files.get(filename)
        if fh is None:
            fh = open(self.log_dir / today.isoformat() / filename, "a", encoding=self.encoding)
            self._files[filename] = fh
        return fh

    def emit(self, record: logging.LogRecord) -> None:
        try:
            fh = self._file(self._filename_for(record))
            if not hasattr(record, "biz"):
                record.biz = infer_log_business(record)
            fh.write(self.format(record) + "\n")
            fh.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            self._close_files()
        finally:
            super().close()


class DailyFolderFileHandler(_DailyFolderHandler):
    """Everything goes to <log_dir>/<YYYY-MM-DD>/<filename>."""

    def __init__(self, log_dir: Path, filename: str, **kwargs) -> None:
        super().__init__(log_dir, **kwargs)
        self.filename = filename

    def _filename_for(self, record: logging.LogRecord) -> str:
        return self.filename


class DailyFolderBusinessFileHandler(_DailyFolderHandler):
    """One file per business bucket: <log_dir>/<YYYY-MM-DD>/<business>.log"""

    def _filename_for(self, record: logging.LogRecord) -> str:
        biz = infer_log_business(record)
        record.biz = biz
        return "".join(c if (c.isalnum() or c in "-_") else "_" for c in biz) + ".log"


class EnsureBizFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not hasattr(record, "biz"):
            record.biz = infer_log_business(record)
        return True


class FixedBizFilter(logging.Filter):
    def __init__(self, biz: str) -> None:
        super().__init__()
        self._biz = biz

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.biz = self._biz
        return True


def _log_dir() -> Path:
    configured = Path(settings.log_dir)
    if configured.is_absolute():
        return configured
    # relative to the repository root
    return Path(__file__).resolve().parents[1] / configured


def setup_logging() -> None:
    """
    配置日志（幂等）：业务日志写 LOG_DIR 下的按天目录，uvicorn 的 access / server
    日志单独成文件，控制台输出挂在 root logger 上。API 进程、worker 进程和
    Celery 进程都在启动时调用一次。
    """
    global _configured
    if _configured:
        return

    log_dir = _log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    common = {
        "log_dir": log_dir,
        "backup_days": int(settings.log_backup_days),
        "timezone_name": settings.log_timezone,
    }
    formatter = LocalTimezoneFormatter(
        "%(asctime)s [%(levelname)s] [%(biz)s] %(name)s - %(message)s",
        timezone_name=settings.log_timezone,
    )

    if settings.log_split_by_business:
        business: logging.Handler = DailyFolderBusinessFileHandler(**common)
    else:
        business = DailyFolderFileHandler(filename="app.log", **common)
    business.setFormatter(formatter)
    business.addFilter(EnsureBizFilter())
    app_logger = logging.getLogger(LOGGER_NAME)
    app_logger.setLevel(level)
    app_logger.addHandler(business)

    for logger_name, biz in (("uvicorn.access", "access"), ("uvicorn.error", "server")):
        handler = DailyFolderFileHandler(filename=f"{biz}.log", **common)
        handler.setFormatter(formatter)
        handler.addFilter(FixedBizFilter(biz))
        target = logging.getLogger(logger_name)
        target.setLevel(level)
        target.addHandler(handler)

    root = logging.getLogger()
    root.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console.addFilter(EnsureBizFilter())
        root.addHandler(console)

    _configured = True


logger = logging.getLogger(LOGGER_NAME)


__all__ = [
    "DailyFolderBusinessFileHandler",
    "DailyFolderFileHandler",
    "LocalTimezoneFormatter",
    "infer_log_business",
    "logger",
    "setup_logging",
]
