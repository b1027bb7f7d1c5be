"""
Capability interfaces used by the recognition pipeline, with Open3D defaults.

Each capability is one method plus a small config dataclass, so alternative
implementations (or mocks) can be passed to the orchestrator:

- FeatureExtractor:       cloud -> keypoints, normals, descriptors, reference frames
- DescriptorMatcher:      descriptor -> nearest model descriptor
- CorrespondenceGrouping: correspondences -> candidate rigid transforms
- PoseRefiner:            (source, target) -> refined transform
- HypothesisVerifier:     (scene, instances) -> accept / reject per instance
- ModelLoader:            path -> model cloud
- TransformBroadcaster:   pose -> downstream consumers

Defaults:
- FPFH features on voxel keypoints (Rusu 2009)
- RANSAC on correspondences with edge-length + distance checkers
- Point-to-point ICP
- Inlier ratio / clutter scoring with greedy conflict resolution

Reference:
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html
- https://www.open3d.org/docs/release/tutorial/pipelines/icp_registration.html
- Aldoma et al. 2012, "A Global Hypotheses Verification Method for 3D Object Recognition"
- Tombari et al. 2010, "Unique Signatures of Histograms for Local Surface Description"
"""

import os
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Protocol, Tuple

import numpy as np
import open3d as o3d

from depth_pose.utils.logger import ProjectLogger


# =============================================================================
# DATA TYPES
# =============================================================================

class Correspondence(NamedTuple):
    """Candidate descriptor match (distance is the squared descriptor distance)."""
    model_index: int
    model_feature_index: int
    scene_feature_index: int
    distance: float


@dataclass(eq=False)
class FeatureSet:
    """
    Attributes:
        keypoints: Open3D cloud of keypoints (with normals)
        descriptors: (K, D) descriptor per keypoint
        reference_frames: (K, 3, 3) local reference frame per keypoint (rows x, y, z)
    """
    keypoints: o3d.geometry.PointCloud
    descriptors: np.ndarray
    reference_frames: np.ndarray

    @property
    def normals(self) -> np.ndarray:
        return np.asarray(self.keypoints.normals)

    def __len__(self):
        return len(self.keypoints.points)


@dataclass(eq=False)
class CandidatePose:
    """
    Attributes:
        model_index: Library entry the transform belongs to
        transform: 4x4 model -> scene transform
        correspondences: Correspondences supporting the transform
    """
    model_index: int
    transform: np.ndarray
    correspondences: List[Correspondence] = field(default_factory=list)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class FeatureConfig:
    voxel_size: float = 0.01
    normal_radius: float = 0.02
    normal_max_nn: int = 30
    feature_radius: float = 0.05
    feature_max_nn: int = 100
    frame_radius: float = 0.03
    normalize: bool = True


@dataclass
class ClusteringConfig:
    bin_size: float = 0.017
    vote_threshold: int = 4
    max_iterations: int = 100000
    confidence: float = 0.999
    edge_length: float = 0.9
    max_instances: int = 5


@dataclass
class AlignmentConfig:
    max_iterations: int = 50
    max_correspondence_distance: float = 0.005
    convergence_epsilon: float = 1e-8


@dataclass
class VerificationConfig:
    resolution: float = 0.005
    inlier_threshold: float = 0.005
    occlusion_threshold: float = 0.01
    clutter_regularizer: float = 5.0
    min_inlier_ratio: float = 0.5
    max_overlap: float = 0.5


def config_from_section(cls, section):
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    section = section or {}
    fields = cls.__dataclass_fields__
    return cls(**{k: v for k, v in section.items() if k in fields})


# =============================================================================
# INTERFACES
# =============================================================================

class FeatureExtractor(Protocol):
    def extract(self, cloud: o3d.geometry.PointCloud) -> FeatureSet: ...


class DescriptorMatcher(Protocol):
    def nearest(self, descriptor: np.ndarray) -> Tuple[int, float]: ...


class CorrespondenceGrouping(Protocol):
    def cluster(self, model_features: FeatureSet, scene_features: FeatureSet,
                correspondences: List[Correspondence]) -> List[CandidatePose]: ...


class PoseRefiner(Protocol):
    def align(self, source: o3d.geometry.PointCloud,
              target: o3d.geometry.PointCloud) -> Tuple[np.ndarray, bool]: ...


class HypothesisVerifier(Protocol):
    def verify(self, scene: o3d.geometry.PointCloud,
               instances: List[o3d.geometry.PointCloud]) -> List[bool]: ...


class ModelLoader(Protocol):
    def load(self, path: str) -> o3d.geometry.PointCloud: ...


class TransformBroadcaster(Protocol):
    def send(self, translation: np.ndarray, rotation: np.ndarray,
             parent_frame: str, child_frame: str, stamp: float) -> None: ...


# =============================================================================
# FEATURE EXTRACTION
# =============================================================================

class FPFHFeatureExtractor:
    """
    Voxel keypoints, hybrid KD-tree normals, FPFH descriptors and a local
    reference frame per keypoint.

    Deterministic for a fixed configuration.
    """

    def __init__(self, config: Optional[FeatureConfig] = None):
        self.config = config or FeatureConfig()

    def extract(self, cloud: o3d.geometry.PointCloud) -> FeatureSet:
        cfg = self.config
        keypoints = cloud.voxel_down_sample(cfg.voxel_size) if len(cloud.points) else o3d.geometry.PointCloud()
        if len(keypoints.points) == 0:
            return FeatureSet(keypoints=keypoints, descriptors=np.zeros((0, 33)),
                              reference_frames=np.zeros((0, 3, 3)))

        keypoints.estimate_normals(
            o3d.geometry.KDTreeSearchParamHybrid(radius=cfg.normal_radius, max_nn=cfg.normal_max_nn))
        fpfh = o3d.pipelines.registration.compute_fpfh_feature(
            keypoints, o3d.geometry.KDTreeSearchParamHybrid(radius=cfg.feature_radius, max_nn=cfg.feature_max_nn))

        descriptors = np.asarray(fpfh.data).T.copy()
        if cfg.normalize:
            descriptors = normalize_descriptors(descriptors)

        return FeatureSet(
            keypoints=keypoints,
            descriptors=descriptors,
            reference_frames=local_reference_frames(keypoints, cfg.frame_radius),
        )


def normalize_descriptors(descriptors: np.ndarray) -> np.ndarray:
    """Unit L2 norm per row; all-zero (degenerate) descriptors become NaN."""
    norms = np.linalg.norm(descriptors, axis=1, keepdims=True)
    with np.errstate(invalid='ignore', divide='ignore'):
        out = descriptors / norms
    out[norms[:, 0] == 0] = np.nan
    return out


def local_reference_frames(keypoints: o3d.geometry.PointCloud, radius: float) -> np.ndarray:
    """
    Per-keypoint frame from the eigenvectors of the neighbourhood covariance.

    x: largest eigenvector, z: smallest (sign taken from the keypoint normal),
    y = z cross x. Neighbourhoods with fewer than 3 points get NaN frames.

    Returns:
        (K, 3, 3) array, rows are the x, y, z axes
    """
    points = np.asarray(keypoints.points)
    normals = np.asarray(keypoints.normals) if keypoints.has_normals() else None
    tree = o3d.geometry.KDTreeFlann(keypoints)

    frames = np.full((len(points), 3, 3), np.nan)
    for i, p in enumerate(points):
        k, idx, _ = tree.search_radius_vector_3d(p, radius)
        if k < 3:
            continue
        neighbours = points[np.asarray(idx)] - p
        _, vectors = np.linalg.eigh(neighbours.T @ neighbours / k)
        x_axis = vectors[:, 2]
        z_axis = vectors[:, 0]
        if normals is not None and np.dot(z_axis, normals[i]) < 0:
            z_axis = -z_axis
        # x points towards the bulk of the neighbourhood
        if np.sum(neighbours @ x_axis) < 0:
            x_axis = -x_axis
        frames[i] = np.vstack([x_axis, np.cross(z_axis, x_axis), z_axis])
    return frames


# =============================================================================
# DESCRIPTOR MATCHING
# =============================================================================

class BruteForceDescriptorMatcher:
    """
    Exhaustive nearest neighbour over the model descriptors.

    Distances are squared Euclidean, like a FLANN k-NN search.
    """

    def __init__(self, model_descriptors: np.ndarray):
        self.model_descriptors = np.asarray(model_descriptors, dtype=np.float64)

    def nearest(self, descriptor: np.ndarray) -> Tuple[int, float]:
        """
        Returns:
            tuple: (model feature index, squared distance); (-1, inf) if the
            model has no descriptor
        """
        if len(self.model_descriptors) == 0:
            return -1, float('inf')
        dist = np.sum((self.model_descriptors - descriptor) ** 2, axis=-1)
        kmin = int(np.argmin(dist))
        return kmin, float(dist[kmin])


# =============================================================================
# CLUSTERING (RANSAC on correspondences)
# =============================================================================

class RansacCorrespondenceGrouping:
    """
    Geometric consistency grouping with RANSAC.

    Repeatedly fits a rigid transform to the remaining correspondences; the
    inliers of each accepted transform are removed before the next round, so
    several instances of one model can be found. A transform is kept when it
    gathers at least vote_threshold inliers.

    Checkers:
    - EdgeLength: rejects samples whose pairwise distances disagree (catches flips)
    - Distance: rejects samples with too distant aligned pairs
    """

    def __init__(self, config: Optional[ClusteringConfig] = None):
        self.config = config or ClusteringConfig()
        self.logger = ProjectLogger.get_instance()

    def cluster(self, model_features: FeatureSet, scene_features: FeatureSet,
                correspondences: List[Correspondence]) -> List[CandidatePose]:
        cfg = self.config
        reg = o3d.pipelines.registration
        remaining = list(correspondences)
        candidates = []

        while len(remaining) >= max(3, cfg.vote_threshold) and len(candidates) < cfg.max_instances:
            corres = o3d.utility.Vector2iVector(
                np.array([[c.model_feature_index, c.scene_feature_index] for c in remaining], dtype=np.int32))

            result = reg.registration_ransac_based_on_correspondence(
                model_features.keypoints, scene_features.keypoints, corres,
                max_correspondence_distance=cfg.bin_size,
                estimation_method=reg.TransformationEstimationPointToPoint(False),
                ransac_n=3,
                checkers=[
                    reg.CorrespondenceCheckerBasedOnEdgeLength(cfg.edge_length),
                    reg.CorrespondenceCheckerBasedOnDistance(cfg.bin_size),
                ],
                criteria=reg.RANSACConvergenceCriteria(cfg.max_iterations, cfg.confidence),
            )

            inlier_pairs = {tuple(pair) for pair in np.asarray(result.correspondence_set).tolist()}
            inliers = [c for c in remaining
                       if (c.model_feature_index, c.scene_feature_index) in inlier_pairs]

            self.logger.debug(f"[CLUSTER] RANSAC fitness: {result.fitness:.4f}, inliers: {len(inliers)}")
            if len(inliers) < cfg.vote_threshold:
                break

            candidates.append(CandidatePose(
                model_index=remaining[0].model_index,
                transform=np.asarray(result.transformation).copy(),
                correspondences=inliers,
            ))
            remaining = [c for c in remaining
                         if (c.model_feature_index, c.scene_feature_index) not in inlier_pairs]

        return candidates


# =============================================================================
# ALIGNMENT (ICP)
# =============================================================================

class IcpPoseRefiner:
    """
    Open3D point-to-point ICP starting from the identity.

    The source is expected to be already placed in scene space, so the
    returned transform is a correction on top of the candidate pose.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()
        self.logger = ProjectLogger.get_instance()

    def align(self, source: o3d.geometry.PointCloud,
              target: o3d.geometry.PointCloud) -> Tuple[np.ndarray, bool]:
        """
        Returns:
            tuple: (4x4 refined transform, converged) where converged means
            ICP found enough correspondences to estimate a transform
        """
        cfg = self.config
        reg = o3d.pipelines.registration
        result = reg.registration_icp(
            source, target, cfg.max_correspondence_distance, np.eye(4),
            reg.TransformationEstimationPointToPoint(),
            reg.ICPConvergenceCriteria(relative_fitness=cfg.convergence_epsilon,
                                       relative_rmse=cfg.convergence_epsilon,
                                       max_iteration=cfg.max_iterations),
        )
        converged = len(result.correspondence_set) >= 3
        self.logger.debug(f"[ICP] fitness: {result.fitness:.4f}, inlier_rmse: {result.inlier_rmse:.6f}, "
                          f"correspondences: {len(result.correspondence_set)}")
        return np.asarray(result.transformation).copy(), converged


# =============================================================================
# HYPOTHESIS VERIFICATION
# =============================================================================

class InlierRatioVerifier:
    """
    Accept / reject each rendered instance against the scene.

    Per instance (both clouds voxelized at `resolution`):
    - inlier ratio: share of instance points within inlier_threshold of the scene
    - clutter ratio: share of scene points near the instance (within
      occlusion_threshold) that the instance does not explain
    - score = inlier_ratio - clutter_ratio / clutter_regularizer

    Instances are then taken greedily by score; an instance is accepted when
    its score reaches min_inlier_ratio and it does not explain mostly the same
    scene points (max_overlap) as an instance accepted before it.
    """

    def __init__(self, config: Optional[VerificationConfig] = None):
        self.config = config or VerificationConfig()
        self.logger = ProjectLogger.get_instance()

    def _score(self, scene, instance):
        cfg = self.config
        if len(instance.points) == 0 or len(scene.points) == 0:
            return -np.inf, np.zeros(len(scene.points), dtype=bool)

        model_to_scene = np.asarray(instance.compute_point_cloud_distance(scene))
        inlier_ratio = float(np.mean(model_to_scene <= cfg.inlier_threshold))

        scene_to_model = np.asarray(scene.compute_point_cloud_distance(instance))
        explained = scene_to_model <= cfg.inlier_threshold
        near = scene_to_model <= cfg.occlusion_threshold
        clutter_ratio = float(np.sum(near & ~explained)) / max(1, int(np.sum(near)))

        return inlier_ratio - clutter_ratio / cfg.clutter_regularizer, explained

    def verify(self, scene: o3d.geometry.PointCloud,
               instances: List[o3d.geometry.PointCloud]) -> List[bool]:
        cfg = self.config
        scene_ds = scene.voxel_down_sample(cfg.resolution) if len(scene.points) else scene

        scored = []
        for instance in instances:
            inst_ds = instance.voxel_down_sample(cfg.resolution) if len(instance.points) else instance
            scored.append(self._score(scene_ds, inst_ds))

        accepted = [False] * len(instances)
        claimed = np.zeros(len(scene_ds.points), dtype=bool)
        for i in sorted(range(len(instances)), key=lambda j: scored[j][0], reverse=True):
            score, explained = scored[i]
            self.logger.debug(f"[VERIFY] instance {i}: score={score:.4f}")
            if score < cfg.min_inlier_ratio:
                continue
            n_explained = int(np.sum(explained))
            overlap = float(np.sum(explained & claimed)) / max(1, n_explained)
            if overlap > cfg.max_overlap:
                continue
            accepted[i] = True
            claimed |= explained

        return accepted


# =============================================================================
# MODEL LOADING
# =============================================================================

class ModelLibraryError(RuntimeError):
    """Model library could not be loaded (missing or malformed model file)."""


class PcdModelLoader:
    """Reads model clouds with Open3D (.pcd, .ply, ...)."""

    def load(self, path):
        if not os.path.isfile(path):
            raise ModelLibraryError(f"Model file not found: {path}")
        cloud = o3d.io.read_point_cloud(path)
        if len(cloud.points) == 0:
            raise ModelLibraryError(f"Model file is empty or malformed: {path}")
        return cloud


# =============================================================================
# BROADCAST
# =============================================================================

class LoggingBroadcaster:
    """Broadcaster that only logs the transform (no transport attached)."""

    def __init__(self):
        self.logger = ProjectLogger.get_instance()

    def send(self, translation, rotation, parent_frame, child_frame, stamp):
        t = np.asarray(translation)
        q = np.asarray(rotation)
        self.logger.info(f"[TF] {parent_frame} -> {child_frame} @ {stamp:.3f}: "
                         f"t=[{t[0]:.4f}, {t[1]:.4f}, {t[2]:.4f}], "
                         f"q=[{q[0]:.4f}, {q[1]:.4f}, {q[2]:.4f}, {q[3]:.4f}]")
