# vslamtools

Building blocks for visual SLAM experiments, written on top of NumPy, SciPy
and Pillow:

- **Bundle adjustment** on datasets in the BAL ("Bundle Adjustment in the Large")
  text format, either as a robust (Huber) sparse nonlinear least-squares problem
  or as a camera/point graph solved with Levenberg-Marquardt, the points being
  eliminated through the Schur complement.
- **Lucas-Kanade optical flow**, single level and coarse-to-fine on a four-level
  image pyramid, in forward or inverse form, with a Shi-Tomasi corner detector.
- **Direct pose estimation** between two grayscale images from a sparse set of
  reference pixels with known depth, on a single image or on a pyramid.
- Angle-axis and quaternion conversions, SO(3)/SE(3) exponential and logarithm
  maps, and the BAL camera model with radial distortion.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Command-line tools

### Bundle adjustment

```
vslam-bundle-adjustment problem.txt
vslam-graph-ba problem.txt
```

Both commands take exactly one argument, the BAL file. They load it, normalise
the scene (points centred on their median and scaled so that the median
absolute deviation is 100), add Gaussian noise (rotation 0.1, translation 0.5,
points 0.5), write `initial.ply`, solve, and write `final.ply`. The PLY files
hold camera centres in green and 3D points in white.

`vslam-bundle-adjustment` minimises the reprojection error with a Huber loss
and prints the solver's progress. `vslam-graph-ba` runs up to 40
Levenberg-Marquardt iterations over vertices for cameras (rotation,
translation, focal length, two distortion terms) and points, printing the
robust chi2 of each iteration and stopping early when no step improves it.

### Optical flow

```
vslam-optical-flow
vslam-optical-flow first.png second.png
```

Without arguments it reads `./LK1.png` and `./LK2.png`. Up to 500 corners are
detected in the first image and tracked into the second with single-level
Lucas-Kanade and with inverse multi-level Lucas-Kanade. Timings are printed and
the successful tracks are drawn on the second image and saved as
`tracked_single_level.png` and `tracked_multi_level.png`.

### Direct method

```
vslam-direct-method
vslam-direct-method left.png disparity.png "frames/{:06d}.png"
```

Without arguments it reads `./left.png`, `./disparity.png` and the frames
`./000001.png` to `./000005.png`. Two thousand pixels at least 20 pixels from
the border are sampled (with a fixed seed) from the left image, their depth is
taken from the disparity map, and the pose of each frame relative to the left
image is refined with the multi-layer direct method, each frame starting from
the previous estimate. The projected pixels are drawn on each frame and saved
as `projected_000001.png` to `projected_000005.png`.

## Library use

```python
import numpy as np

from vslamtools.rotation import angle_axis_rotate_point, angle_axis_to_quaternion
from vslamtools.bal import BALProblem
from vslamtools.bundle_adjustment import solve_ba

# A quarter turn about z takes the x axis to the y axis.
print(angle_axis_rotate_point(np.array([0.0, 0.0, np.pi / 2]), np.array([1.0, 0.0, 0.0])))
print(angle_axis_to_quaternion(np.array([0.0, 0.0, np.pi / 2])))

problem = BALProblem.load("problem.txt", use_quaternions=False)
problem.normalize()
problem.write_to_ply_file("initial.ply")
solve_ba(problem)
problem.write_to_ply_file("final.ply")
problem.write_to_file("solved.txt")
```

Modules:

- `vslamtools.rotation`: `angle_axis_to_quaternion`, `quaternion_to_angle_axis`,
  `angle_axis_rotate_point`.
- `vslamtools.sampling`: `rand_double`, `rand_normal` (polar method), both taking
  an optional `random.Random`.
- `vslamtools.bal`: `BALProblem` (`load`, `write_to_file`, `write_to_ply_file`,
  `normalize`, `perturb`, `cameras`, `points`, `camera_for_observation`,
  `point_for_observation`, ...), `median`, `perturb_point3`.
- `vslamtools.reprojection`: `cam_projection_with_distortion` and
  `SnavelyReprojectionError`.
- `vslamtools.lie`: `hat`, `so3_exp`, `so3_log` and the `SE3` class.
- `vslamtools.bundle_adjustment`: `solve_ba`.
- `vslamtools.graph_ba`: `solve_ba_levenberg` and `PoseAndIntrinsics`.
- `vslamtools.image`: `load_gray`, `get_pixel_value` (bilinear sampling) and
  `build_pyramid`.
- `vslamtools.optical_flow`: `optical_flow_single_level`,
  `optical_flow_multi_level` and `detect_good_features`.
- `vslamtools.direct_method`: `CameraIntrinsics`, `JacobianAccumulator`,
  `get_pixel_value`, `direct_pose_estimation_single_layer` and
  `direct_pose_estimation_multi_layer`.

## What it does not do

- It opens no windows: the optical-flow and direct-method commands save their
  drawings as PNG files instead of showing them.
- The optical-flow command does not compare its tracks with any other tracker.
- Quaternion cameras can be loaded, normalised, perturbed and written, but both
  bundle adjustment solvers accept only angle-axis cameras.