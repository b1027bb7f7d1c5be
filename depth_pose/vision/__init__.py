# Vision module init
from .frame import Frame

from .preprocessing import (
    range_filter,
    roi_crop,
    crop_margins,
    ground_truth_diff,
    ReferenceStore,
)

from .plane_statistics import (
    PlaneModel,
    compute_centroid,
    compute_covariance,
    compute_covariance_normalized,
    compute_mean_and_covariance,
    solve_plane_parameters,
    estimate_plane,
)

from .corner_tracker import (
    CornerId,
    CornerSet,
    CornerAccumulator,
    CornerTracker,
    extract_corners,
)

from .yaw_resolver import (
    BoxDimension,
    Side,
    YawResolver,
    YawResult,
)

from .mean_filter import (
    FrameQueue,
    MeanFrameResult,
    TemporalMeanFilter,
    temporal_mean,
)

from .box_detector import (
    BoxDetector,
    BoxPose,
)
