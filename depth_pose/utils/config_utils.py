"""
Configuration loading and typed accessors for config.yaml sections.
"""
import os

import yaml


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be read."""


# ============================================================
# Config Loading Functions
# ============================================================
def load_config(path=None):
    """
    Load configuration from YAML file.
    Default path is config.yaml in the depth_pose package directory.
    """
    if path is None:
        utils_dir = os.path.dirname(os.path.abspath(__file__))
        package_dir = os.path.dirname(utils_dir)
        path = os.path.join(package_dir, "config.yaml")

    if not os.path.isfile(path):
        raise ConfigError(f"Config file not found: {path}")

    with open(path, 'r') as f:
        config = yaml.safe_load(f)
    return config or {}


def get_box_detector_config(config):
    """Get the box_detector section (empty dict if missing)."""
    return config.get('box_detector', {})


def get_box_dimension(config):
    """
    Get the known box footprint as (width, length) in meters.
    """
    box = get_box_detector_config(config).get('box', {})
    return float(box.get('width', 0.2)), float(box.get('length', 0.3))


def get_recognition_config(config):
    """Get the recognition section (empty dict if missing)."""
    return config.get('recognition', {})


def get_publication_config(config):
    """Get publication settings with defaults filled in."""
    pub = config.get('publication', {})
    return {
        'min_interval': float(pub.get('min_interval', 0.5)),
        'parent_frame': pub.get('parent_frame', 'camera'),
        'child_prefix': pub.get('child_prefix', 'object_'),
    }
