"""
Utility functions for configuration loading and logging.
"""
from .config_utils import (
    ConfigError,
    load_config,
    get_box_detector_config,
    get_box_dimension,
    get_recognition_config,
    get_publication_config,
)
from .logger import (
    ProjectLogger,
    get_logger,
)
