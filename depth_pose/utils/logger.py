"""
Project-wide logger.

One ProjectLogger instance is shared by every pipeline stage. It is configured
once from the `debug` section of config.yaml:

    debug:
      enabled: true          # gate for ProjectLogger.debug()
      log_to_file: false     # also write outputs/detection_logs/detection_<time>.log
      log_level: "INFO"      # "ALL", one level name, or a list of level names

Usage:
    from depth_pose.utils.logger import ProjectLogger

    self.logger = ProjectLogger.get_instance()
    self.logger.info("[BOX] Frame skipped")

Reference:
- Python logging: https://docs.python.org/3/library/logging.html
- Singleton pattern: https://refactoring.guru/design-patterns/singleton/python
- ANSI escape codes: https://en.wikipedia.org/wiki/ANSI_escape_code
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np


LOGGER_NAME = 'depth_pose'

_RESET = '\033[0m'

# level -> (ANSI style, line marker)
_LEVEL_STYLE = {
    logging.DEBUG: ('\033[38;5;245m\033[2m', '  '),
    logging.INFO: ('\033[38;5;39m', '> '),
    logging.WARNING: ('\033[38;5;208m\033[1m', '! '),
    logging.ERROR: ('\033[38;5;196m\033[1m', 'x '),
    logging.CRITICAL: ('\033[38;5;196m\033[1m\033[4m', 'xx '),
}

LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
    'ALL': logging.DEBUG,
}


class SelectiveLevelFilter(logging.Filter):
    """
    Pass only records whose level is listed, e.g. ["INFO", "ERROR"] hides
    WARNING while still showing ERROR.
    """

    def __init__(self, allowed_levels: List[str]):
        super().__init__()
        self.allowed_levels = {LOG_LEVELS.get(name.upper(), logging.INFO) for name in allowed_levels}

    def filter(self, record):
        return record.levelno in self.allowed_levels


class ColoredFormatter(logging.Formatter):
    """Console formatter: colored level name and a one-character marker."""

    def format(self, record):
        style, marker = _LEVEL_STYLE.get(record.levelno, (_RESET, ''))
        text = super().format(record)
        text = text.replace(record.levelname, f"{style}{record.levelname}{_RESET}", 1)
        return f"{marker}{text}"


def _console_handler(level_config) -> Tuple[logging.Handler, int, Optional[SelectiveLevelFilter]]:
    """
    Build the stdout handler for a log_level setting.

    Returns:
        tuple: (handler, effective level, selective filter or None)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter(fmt='%(levelname)-8s %(message)s'))

    if isinstance(level_config, list):
        selective = SelectiveLevelFilter(level_config)
        handler.addFilter(selective)
        handler.setLevel(logging.DEBUG)
        return handler, logging.DEBUG, selective

    level = LOG_LEVELS.get(str(level_config).upper(), logging.INFO)
    handler.setLevel(level)
    return handler, level, None


class ProjectLogger:
    """
    Singleton wrapper around the 'depth_pose' stdlib logger.

    Attributes:
        debug_enabled: debug() calls are dropped when False
        log_level: Effective console threshold
        selective_filter: SelectiveLevelFilter when log_level is a list
        log_file_path: Current log file, None when file logging is off
    """

    _instance: Optional['ProjectLogger'] = None
    _initialized: bool = False

    def __new__(cls, config: Optional[Dict] = None):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, config: Optional[Dict] = None):
        if ProjectLogger._initialized:
            return

        if config is None:
            from depth_pose.utils.config_utils import load_config
            config = load_config()

        self.config = config
        self._configure(config.get('debug', {}))
        ProjectLogger._initialized = True

    def _configure(self, debug_config: Dict):
        self.debug_enabled = debug_config.get('enabled', True)

        self._logger = logging.getLogger(LOGGER_NAME)
        self._logger.setLevel(logging.DEBUG)
        self._logger.handlers = []
        self._logger.propagate = False

        handler, self.log_level, self.selective_filter = _console_handler(debug_config.get('log_level', 'INFO'))
        self._logger.addHandler(handler)

        self.log_file_path = None
        if debug_config.get('log_to_file', False):
            self._attach_file_handler()

    def _attach_file_handler(self):
        """Everything from DEBUG up goes to outputs/detection_logs/detection_<time>.log."""
        output_dir = self.config.get('output', {}).get('directory', 'outputs')
        log_dir = Path(__file__).resolve().parent.parent.parent / output_dir / 'detection_logs'
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            path = log_dir / f"detection_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
            handler = logging.FileHandler(path, encoding='utf-8')
        except OSError as e:
            self._logger.warning(f"[LOGGER] Could not create log file in {log_dir}: {e}")
            return

        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(fmt='%(asctime)s | %(levelname)-8s | %(message)s',
                                               datefmt='%Y-%m-%d %H:%M:%S'))
        self._logger.addHandler(handler)
        self.log_file_path = path

    @classmethod
    def get_instance(cls, config: Optional[Dict] = None) -> 'ProjectLogger':
        """config is only used by the call that creates the instance."""
        if cls._instance is None or not cls._initialized:
            cls._instance = cls(config)
        return cls._instance

    @classmethod
    def reset(cls):
        """Drop the instance so the next get_instance() reconfigures (tests)."""
        if cls._instance is not None:
            cls._instance.cleanup()
        cls._instance = None
        cls._initialized = False

    def cleanup(self):
        logger = getattr(self, '_logger', None)
        if logger is None:
            return
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

    # =========================================================================
    # LEVEL METHODS
    # =========================================================================

    def debug(self, msg: str, *args, **kwargs):
        if self.debug_enabled:
            self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._logger.critical(msg, *args, **kwargs)

    # =========================================================================
    # PIPELINE REPORTS
    # =========================================================================

    def log_stage(self, title: str, info: Optional[List[str]] = None):
        """
        Step header plus indented detail lines, at DEBUG level.

        Args:
            title: Step title, e.g. "2. box_3"
            info: Detail lines
        """
        self.debug(f"[STEP] {title}")
        for line in info or []:
            self.debug(f"  {line}")

    def log_plane_result(self, plane):
        if not plane.is_valid():
            self.warning("[PLANE] Estimate failed (NaN normal)")
            return
        n = plane.normal
        c = plane.centroid
        self.info(f"[PLANE] normal=[{n[0]:.4f}, {n[1]:.4f}, {n[2]:.4f}], curvature={plane.curvature:.6f}")
        self.debug(f"  centroid=[{c[0]:.4f}, {c[1]:.4f}, {c[2]:.4f}], d={plane.offset:.4f}")

    def log_box_pose(self, pose):
        c = pose.centroid
        self.info(f"[BOX] yaw={np.degrees(pose.yaw):.2f} deg from {pose.corner.name}/{pose.side.name}, "
                  f"position=[{c[0]:.4f}, {c[1]:.4f}, {c[2]:.4f}]")

    def log_recognition_summary(self, n_models: int, n_candidates: int,
                                n_accepted: int, total_time: Optional[float] = None):
        """
        End-of-scene report.

        Args:
            n_models: Library models searched
            n_candidates: Instances handed to verification
            n_accepted: Instances accepted by verification
            total_time: Wall time of the scene in seconds
        """
        self.info("=" * 60)
        self.info(f"RECOGNITION: {n_models} models, {n_candidates} instances verified")
        if n_accepted > 0:
            self.info(f"  accepted: {n_accepted}")
        else:
            self.warning("  no hypothesis accepted")
        if total_time is not None:
            self.info(f"  time: {total_time:.2f} s")
        self.info("=" * 60)


def get_logger() -> ProjectLogger:
    return ProjectLogger.get_instance()
