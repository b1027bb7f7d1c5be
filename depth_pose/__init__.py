"""
depth_pose: object pose estimation from depth-sensor point clouds.

- vision: box pipeline (range filter, crop, corners, yaw) and frame statistics
- recognition: descriptor-based 6-DoF recognition and pose publication
- utils: configuration and logging
"""

__version__ = "0.1.0"
