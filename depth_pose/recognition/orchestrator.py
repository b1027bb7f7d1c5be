"""
Recognition pipeline: 6-DoF poses of library models in a scene frame.

Pipeline:
- STEP 1: Scene features (same extractor as the models)
- STEP 2: Descriptor correspondences per model (nearest neighbour + threshold)
- STEP 3: Correspondence clustering -> candidate transforms
- STEP 4: Alignment of each candidate instance against the scene
- STEP 5: Global hypothesis verification over all instances

Reference:
- https://pcl.readthedocs.io/projects/tutorials/en/master/global_hypothesis_verification.html
- https://www.open3d.org/docs/release/tutorial/pipelines/global_registration.html
"""

import copy
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from depth_pose.recognition.collaborators import (
    AlignmentConfig,
    BruteForceDescriptorMatcher,
    ClusteringConfig,
    Correspondence,
    CorrespondenceGrouping,
    DescriptorMatcher,
    FeatureConfig,
    FeatureExtractor,
    FPFHFeatureExtractor,
    HypothesisVerifier,
    IcpPoseRefiner,
    InlierRatioVerifier,
    PoseRefiner,
    RansacCorrespondenceGrouping,
    VerificationConfig,
    config_from_section,
)
from depth_pose.recognition.model_library import ModelEntry, load_model_library
from depth_pose.utils.config_utils import get_recognition_config
from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.frame import Frame


@dataclass(eq=False)
class VerifiedPose:
    """
    Attributes:
        model_index: Library entry of the instance
        identity: Library entry name
        transform: Final 4x4 model -> scene transform (refined @ candidate)
        candidate_transform: Transform from clustering
        refined_transform: Correction from alignment
        accepted: Verification result
        converged: Alignment convergence flag
    """
    model_index: int
    identity: str
    transform: np.ndarray
    candidate_transform: np.ndarray
    refined_transform: np.ndarray
    accepted: bool
    converged: bool = True


def match_correspondences(scene_descriptors: np.ndarray, model_entry: ModelEntry,
                          distance_threshold: float, model_index: int = 0,
                          matcher_factory: Callable[[np.ndarray], DescriptorMatcher] = BruteForceDescriptorMatcher
                          ) -> List[Correspondence]:
    """
    Nearest model descriptor for every scene descriptor.

    Scene descriptors with a non-finite component are skipped. A match is kept
    iff its (squared) distance is strictly below distance_threshold.

    Args:
        scene_descriptors: (K, D) scene descriptors
        model_entry: Library entry to match against
        distance_threshold: Maximum descriptor distance (exclusive)
        model_index: Index stored in the correspondences
        matcher_factory: Builds the nearest neighbour search over the model descriptors

    Returns:
        list: Correspondence per kept match, in scene descriptor order
    """
    matcher = matcher_factory(model_entry.features.descriptors)
    correspondences = []
    for j, descriptor in enumerate(np.asarray(scene_descriptors)):
        if not np.all(np.isfinite(descriptor)):
            continue
        k, distance = matcher.nearest(descriptor)
        if k >= 0 and distance < distance_threshold:
            correspondences.append(Correspondence(model_index, k, j, distance))
    return correspondences


class RecognitionOrchestrator:
    """
    Owns the model library and the recognition collaborators.

    Args:
        library: Loaded model entries
        extractor: Feature extractor (must be the one used for the library)
        grouping: Correspondence clustering
        refiner: Alignment of rendered instances against the scene
        verifier: Hypothesis verification
        distance_threshold: Descriptor match threshold
        matcher_factory: Nearest neighbour search factory

    Usage:
        orchestrator = RecognitionOrchestrator.from_config(load_config())
        poses = orchestrator.recognize(frame)
        for pose in orchestrator.accepted(poses):
            ...
    """

    def __init__(self, library: List[ModelEntry], extractor: FeatureExtractor,
                 grouping: CorrespondenceGrouping, refiner: PoseRefiner,
                 verifier: HypothesisVerifier, distance_threshold: float = 0.25,
                 matcher_factory=BruteForceDescriptorMatcher):
        self.library = library
        self.extractor = extractor
        self.grouping = grouping
        self.refiner = refiner
        self.verifier = verifier
        self.distance_threshold = distance_threshold
        self.matcher_factory = matcher_factory
        self.logger = ProjectLogger.get_instance()

    @classmethod
    def from_config(cls, config, library: Optional[List[ModelEntry]] = None) -> 'RecognitionOrchestrator':
        """
        Build the Open3D default collaborators from the recognition section
        and load the model library (unless one is given).

        Raises:
            ModelLibraryError: A model file is missing or malformed
        """
        section = get_recognition_config(config)
        extractor = FPFHFeatureExtractor(config_from_section(FeatureConfig, section.get('features')))

        if library is None:
            library = load_model_library(
                section.get('model_path', 'models'),
                int(section.get('library_size', 10)),
                extractor,
                prefix=section.get('model_prefix', 'box_'),
            )

        return cls(
            library=library,
            extractor=extractor,
            grouping=RansacCorrespondenceGrouping(config_from_section(ClusteringConfig, section.get('clustering'))),
            refiner=IcpPoseRefiner(config_from_section(AlignmentConfig, section.get('alignment'))),
            verifier=InlierRatioVerifier(config_from_section(VerificationConfig, section.get('verification'))),
            distance_threshold=float(section.get('distance_threshold', 0.25)),
        )

    # =========================================================================
    # MAIN FUNCTION
    # =========================================================================

    def recognize(self, scene_frame) -> List[VerifiedPose]:
        """
        Run the recognition pipeline on one scene.

        Args:
            scene_frame: Frame or Open3D point cloud

        Returns:
            list: VerifiedPose per instance handed to verification (accepted or
            not); empty when no model produced a candidate
        """
        t_start = time.time()
        scene = scene_frame.to_point_cloud() if isinstance(scene_frame, Frame) else scene_frame

        # =====================================================================
        # STEP 1: Scene features
        # =====================================================================
        scene_features = self.extractor.extract(scene)
        self.logger.log_stage("1. SCENE FEATURES", [f"Keypoints: {len(scene_features.descriptors)}"])

        instances = []
        hypotheses = []
        for i, entry in enumerate(self.library):
            # =================================================================
            # STEP 2: Correspondences
            # =================================================================
            correspondences = match_correspondences(
                scene_features.descriptors, entry, self.distance_threshold,
                model_index=i, matcher_factory=self.matcher_factory)
            if not correspondences:
                self.logger.debug(f"[RECOGNIZE] {entry.identity}: no correspondences")
                continue

            # =================================================================
            # STEP 3: Clustering
            # =================================================================
            candidates = self.grouping.cluster(entry.features, scene_features, correspondences)
            self.logger.log_stage(f"2. {entry.identity}", [
                f"Correspondences: {len(correspondences)}",
                f"Candidates: {len(candidates)}",
            ])
            if not candidates:
                continue

            # =================================================================
            # STEP 4: Alignment
            # =================================================================
            for candidate in candidates:
                rendered = copy.deepcopy(entry.cloud)
                rendered.transform(candidate.transform)
                refined, converged = self.refiner.align(rendered, scene)
                if not converged:
                    self.logger.debug(f"[RECOGNIZE] {entry.identity}: alignment did not converge")

                final = refined @ candidate.transform
                instance = copy.deepcopy(entry.cloud)
                instance.transform(final)
                instances.append(instance)
                hypotheses.append(VerifiedPose(
                    model_index=i,
                    identity=entry.identity,
                    transform=final,
                    candidate_transform=candidate.transform,
                    refined_transform=refined,
                    accepted=False,
                    converged=converged,
                ))

        if not instances:
            self.logger.log_recognition_summary(len(self.library), 0, 0, time.time() - t_start)
            return []

        # =====================================================================
        # STEP 5: Verification (all models together)
        # =====================================================================
        mask = list(self.verifier.verify(scene, instances))
        if len(mask) != len(hypotheses):
            self.logger.error(f"[VERIFY] Verifier returned {len(mask)} decisions for "
                              f"{len(hypotheses)} hypotheses, none accepted")
        else:
            for pose, ok in zip(hypotheses, mask):
                pose.accepted = bool(ok)

        n_accepted = sum(1 for p in hypotheses if p.accepted)
        self.logger.log_recognition_summary(len(self.library), len(hypotheses), n_accepted,
                                            time.time() - t_start)
        return hypotheses

    @staticmethod
    def accepted(poses: List[VerifiedPose]) -> List[VerifiedPose]:
        return [p for p in poses if p.accepted]
