"""Visual SLAM building blocks: BAL bundle adjustment, optical flow and direct pose estimation."""

__version__ = "0.1.0"