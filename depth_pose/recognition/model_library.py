"""
Model library: point clouds of the object seen from several viewpoints,
each with its precomputed features.

Files are looked up as <path>/<prefix><i>.pcd for i in range(size).
"""

import os
import time
from dataclasses import dataclass
from typing import List, Optional

import open3d as o3d

from depth_pose.recognition.collaborators import (
    FeatureExtractor,
    FeatureSet,
    ModelLibraryError,
    ModelLoader,
    PcdModelLoader,
)
from depth_pose.utils.logger import ProjectLogger


@dataclass(eq=False)
class ModelEntry:
    identity: str
    cloud: o3d.geometry.PointCloud
    features: FeatureSet


def model_file_path(path: str, index: int, prefix: str = "box_") -> str:
    return os.path.join(path, f"{prefix}{index}.pcd")


def load_model_library(path: str, size: int, extractor: FeatureExtractor,
                       loader: Optional[ModelLoader] = None,
                       prefix: str = "box_") -> List[ModelEntry]:
    """
    Load every model file and compute its features once.

    Args:
        path: Directory of the model files
        size: Number of models
        extractor: Feature extractor used for the models (same as the scene's)
        loader: Cloud reader, PcdModelLoader if None
        prefix: File name prefix

    Returns:
        list: ModelEntry per file, in index order

    Raises:
        ModelLibraryError: A file is missing or malformed
    """
    logger = ProjectLogger.get_instance()
    loader = loader if loader is not None else PcdModelLoader()

    if size < 1:
        raise ModelLibraryError(f"Model library size must be positive, got {size}")

    t_start = time.time()
    library = []
    for i in range(size):
        file_path = model_file_path(path, i, prefix)
        cloud = loader.load(file_path)
        features = extractor.extract(cloud)
        logger.debug(f"[MODELS] {os.path.basename(file_path)}: {len(cloud.points)} points, "
                     f"{len(features)} keypoints")
        library.append(ModelEntry(identity=f"{prefix}{i}", cloud=cloud, features=features))

    logger.info(f"[MODELS] Loaded {len(library)} models from {path} in {time.time() - t_start:.2f}s")
    return library
