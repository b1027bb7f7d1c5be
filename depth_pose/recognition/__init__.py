# Recognition module init
from .collaborators import (
    AlignmentConfig,
    BruteForceDescriptorMatcher,
    CandidatePose,
    ClusteringConfig,
    Correspondence,
    FeatureConfig,
    FeatureSet,
    FPFHFeatureExtractor,
    IcpPoseRefiner,
    InlierRatioVerifier,
    LoggingBroadcaster,
    ModelLibraryError,
    PcdModelLoader,
    RansacCorrespondenceGrouping,
    VerificationConfig,
)

from .model_library import (
    ModelEntry,
    load_model_library,
)

from .orchestrator import (
    RecognitionOrchestrator,
    VerifiedPose,
    match_correspondences,
)

from .publisher import PosePublisher
