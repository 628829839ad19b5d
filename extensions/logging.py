from __future__ import annotations
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional
from contextvars import ContextVar

# Which target is the control loop handling right now?
_CURRENT_TARGET: ContextVar[Optional[str]] = ContextVar("_CURRENT_TARGET", default=None)


def current_target() -> Optional[str]:
    return _CURRENT_TARGET.get()


class _TargetFilter(logging.Filter):
    """
    Allow records emitted while the given target is the current context, or
    records from loggers named target.<name>. The handler sits on root and
    still only sees one target's lines.
    """
    def __init__(self, target: str) -> None:
        super().__init__()
        self.target = str(target)

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        if _CURRENT_TARGET.get() == self.target:
            return True
        name = getattr(record, "name", "") or ""
        return name.startswith(f"target.{self.target}")


@contextmanager
def target_context(name: Optional[str]) -> Iterator[None]:
    """Route module loggers into `name`'s file for the duration of the block."""
    token = _CURRENT_TARGET.set(name)
    try:
        yield
    finally:
        _CURRENT_TARGET.reset(token)


class LoggingExtension:
    def __init__(
        self,
        log_dir: Path = Path("logs"),
        *,
        global_level: int = logging.INFO,
        per_target_level: Optional[int] = None,  # default to global_level if None
        install_console: bool = True,
    ) -> None:
        self.log_dir = log_dir
        self.global_level = global_level
        self.per_target_level = per_target_level if per_target_level is not None else global_level
        self._target_handlers: Dict[str, logging.Handler] = {}
        self._run_handler: Optional[logging.Handler] = None

        if install_console:
            self._install_console(self.global_level)
            # Root stays permissive; handler levels do the filtering.
            logging.getLogger().setLevel(logging.DEBUG)

    # ---------------- Console ----------------

    def _install_console(self, level: int) -> None:
        root = logging.getLogger()
        for h in list(root.handlers):
            root.removeHandler(h)

        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        root.addHandler(ch)

    def install_run_file(self, path: Path) -> None:
        """Every record at global_level or above also goes to one run-wide file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path, mode="a", encoding="utf-8")
        fh.setLevel(self.global_level)
        fh.setFormatter(logging.Formatter(
            fmt="%(levelname)s %(asctime)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logging.getLogger().addHandler(fh)
        self._run_handler = fh

    # ---------------- Target logger ----------------

    def target_log_path(self, target: str) -> Path:
        return self.log_dir / f"{target}.log"

    def get_target_logger(self, target: str) -> logging.Logger:
        """
        Return a target-scoped logger, attaching (once) a root file handler
        that only passes that target's records into logs/<target>.log.
        """
        if target not in self._target_handlers:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(self.target_log_path(target), mode="a", encoding="utf-8")
            fh.setLevel(self.per_target_level)
            fh.addFilter(_TargetFilter(target))
            fh.setFormatter(logging.Formatter(
                fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger().addHandler(fh)
            self._target_handlers[target] = fh

        logger = logging.getLogger(f"target.{target}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = True
        return logger

    def release_target(self, target: str) -> None:
        fh = self._target_handlers.pop(target, None)
        if fh is None:
            return
        logging.getLogger().removeHandler(fh)
        fh.flush()
        fh.close()

    # ---------------- Context helpers ----------------

    def set_target_context(self, target: str):
        """Returns a token for reset_target_context()."""
        return _CURRENT_TARGET.set(str(target))

    def reset_target_context(self, token) -> None:
        _CURRENT_TARGET.reset(token)

    # ---------------- Cleanup ----------------

    def close(self) -> None:
        for target in list(self._target_handlers):
            self.release_target(target)
        if self._run_handler is not None:
            logging.getLogger().removeHandler(self._run_handler)
            self._run_handler.close()
            self._run_handler = None


__all__ = ["LoggingExtension", "target_context", "current_target"]
