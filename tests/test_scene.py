#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

import json
import os
import numpy as np
import pytest
import torch
from PIL import Image
from scene import Scene
from scene.colmap_loader import read_extrinsics_text, read_intrinsics_text, read_points3D_text
from scene.dataset_readers import intrinsics_from_colmap, getNerfppNorm, CameraInfo
from scene.gaussian_model import GaussianModel
from utils.errors import InvalidCameraError, SceneFormatError
from utils.loss_utils import l1_loss, photometric_loss, ssim

CAMERAS_TXT = """# Camera list with one line of data per camera:
1 PINHOLE 16 12 20.0 20.0 8.0 6.0
"""

IMAGES_TXT = """# Image list with two lines of data per image:
1 1.0 0.0 0.0 0.0 0.0 0.0 0.0 1 a.png

2 1.0 0.0 0.0 0.0 0.5 0.0 0.0 1 b.png
10.0 20.0 -1 11.0 21.0 3
"""

POINTS_TXT = """# 3D point list
1 0.1 0.2 3.0 255 0 0 0.5 1 0
2 -0.2 0.1 3.5 0 255 0 0.4 1 1
3 0.0 -0.1 4.0 0 0 255 0.3
4 0.3 0.3 2.5 128 128 128 0.2
"""


def write_colmap_scene(root, images=("a.png", "b.png")):
    sparse = root / "sparse" / "0"
    sparse.mkdir(parents=True)
    (sparse / "cameras.txt").write_text(CAMERAS_TXT)
    (sparse / "images.txt").write_text(IMAGES_TXT)
    (sparse / "points3D.txt").write_text(POINTS_TXT)
    (root / "images").mkdir()
    rng = np.random.default_rng(0)
    for name in images:
        Image.fromarray(rng.integers(0, 255, (12, 16, 3), dtype=np.uint8)).save(root / "images" / name)
    return root


def test_read_colmap_text_model(tmp_path):
    root = write_colmap_scene(tmp_path)
    cameras = read_intrinsics_text(str(root / "sparse/0/cameras.txt"))
    images = read_extrinsics_text(str(root / "sparse/0/images.txt"))
    xyz, rgb, errors = read_points3D_text(str(root / "sparse/0/points3D.txt"))

    assert cameras[1].model == "PINHOLE"
    assert (cameras[1].width, cameras[1].height) == (16, 12)
    assert intrinsics_from_colmap(cameras[1])[:4] == (20.0, 20.0, 8.0, 6.0)
    assert sorted(images) == [1, 2]
    assert images[1].xys.shape == (0, 2)
    assert images[2].xys.shape == (2, 2)
    assert images[2].point3D_ids.tolist() == [-1, 3]
    assert xyz.shape == (4, 3) and rgb.shape == (4, 3) and errors.shape == (4, 1)
    assert rgb[0].tolist() == [255, 0, 0]


def test_malformed_colmap_records(tmp_path):
    path = tmp_path / "cameras.txt"
    path.write_text("1 PINHOLE 16 12 20.0\n")
    with pytest.raises(SceneFormatError):
        read_intrinsics_text(str(path))
    path.write_text("1 NOT_A_MODEL 16 12 20.0 8.0 6.0\n")
    with pytest.raises(SceneFormatError):
        read_intrinsics_text(str(path))
    path.write_text("1 PINHOLE sixteen 12 20.0 20.0 8.0 6.0\n")
    with pytest.raises(SceneFormatError):
        read_intrinsics_text(str(path))
    path.write_text("1 PINHOLE 16 12 20.0 20.0 8.0 6,0\n")
    with pytest.raises(SceneFormatError):
        read_intrinsics_text(str(path))
    path.write_text("1 0.1 0.2\n")
    with pytest.raises(SceneFormatError):
        read_points3D_text(str(path))

    images = tmp_path / "images.txt"
    images.write_text("x 1.0 0.0 0.0 0.0 0.0 0.0 0.0 1 a.png\n\n")
    with pytest.raises(SceneFormatError):
        read_extrinsics_text(str(images))
    images.write_text("1 1.0 0.0 0.0 0.0 0.0 0.0 0.0 1 a.png\n10.0 20.0 nan? 11.0 21.0 3\n")
    with pytest.raises(SceneFormatError):
        read_extrinsics_text(str(images))


def test_distortion_models_and_unsupported_models(tmp_path):
    path = tmp_path / "cameras.txt"
    path.write_text("1 OPENCV 16 12 20.0 21.0 8.0 6.0 0.1 0.01 0.0 0.0\n2 FOV 16 12 20.0 20.0 8.0 6.0 0.5\n")
    cameras = read_intrinsics_text(str(path))
    fx, fy, cx, cy, distortion = intrinsics_from_colmap(cameras[1])
    assert (fx, fy) == (20.0, 21.0)
    assert distortion.tolist() == [0.1, 0.01, 0.0, 0.0]
    with pytest.raises(SceneFormatError):
        intrinsics_from_colmap(cameras[2])


def test_scene_from_colmap_text(tmp_path, model_params):
    write_colmap_scene(tmp_path / "source")
    gaussians = GaussianModel(0, device="cpu")
    scene = Scene(model_params, gaussians)

    assert len(scene.getTrainCameras()) == 2
    assert scene.getTestCameras() == []
    assert gaussians.num_points == 4
    assert scene.cameras_extent > 0
    camera = scene.getTrainCameras()[0]
    assert camera.original_image.shape == (3, 12, 16)
    assert (camera.fx, camera.cx) == (20.0, 8.0)
    assert os.path.exists(os.path.join(model_params.model_path, "input.ply"))
    with open(os.path.join(model_params.model_path, "cameras.json")) as f:
        cameras = json.load(f)
    assert len(cameras) == 2 and cameras[0]["fx"] == 20.0

    scene.save(10)
    assert os.path.exists(os.path.join(model_params.model_path, "point_cloud", "iteration_10", "point_cloud.ply"))


def test_scene_reports_missing_inputs(tmp_path, model_params):
    os.makedirs(model_params.source_path)
    with pytest.raises(SceneFormatError):
        Scene(model_params, GaussianModel(0, device="cpu"))


def test_scene_reports_missing_image(tmp_path, model_params):
    write_colmap_scene(tmp_path / "source", images=("a.png",))
    with pytest.raises(SceneFormatError):
        Scene(model_params, GaussianModel(0, device="cpu"))


def test_random_initialization(tmp_path, model_params):
    write_colmap_scene(tmp_path / "source")
    model_params.init_mode = "random"
    model_params.init_num_points = 50
    gaussians = GaussianModel(0, device="cpu")
    Scene(model_params, gaussians)
    assert gaussians.num_points == 50


def test_single_camera_scene_has_unit_extent():
    info = CameraInfo(uid=0, R=np.eye(3), T=np.zeros(3), fx=1.0, fy=1.0, cx=0.5, cy=0.5, image=None,
                      image_path="", image_name="x", width=1, height=1)
    assert getNerfppNorm([info])["radius"] == 1.0


@pytest.mark.parametrize("overrides", [
    {"fx": 0.0},
    {"fy": -3.0},
    {"width": 0},
    {"R": np.diag([1.0, 1.0, -1.0])},
    {"R": np.eye(3) * 2.0},
])
def test_invalid_cameras_are_rejected(camera_factory, overrides):
    with pytest.raises(InvalidCameraError):
        camera_factory(image=torch.zeros((3, 24, 32)) if "width" not in overrides else torch.zeros((3, 24, 1)),
                       **overrides)


def test_image_size_must_match_camera(camera_factory):
    with pytest.raises(InvalidCameraError):
        camera_factory(image=torch.zeros((3, 10, 10)))


def test_projection_matrix_matches_pixel_coordinates(camera):
    view = camera.view()
    point = torch.tensor([1.0, 0.5, 5.0, 1.0])
    clip = view.full_proj_transform @ point
    ndc = clip[:2] / clip[3]
    assert torch.allclose(ndc, torch.tensor([2.0 * 20.5 / 32 - 1.0, 2.0 * 14.5 / 24 - 1.0]))
    assert torch.allclose(view.camera_center, torch.zeros(3))
    assert view.tanfovx == pytest.approx(32 / 40.0)


def test_losses():
    gen = torch.Generator().manual_seed(0)
    a = torch.rand((3, 16, 16), generator=gen)
    b = torch.rand((3, 16, 16), generator=gen)
    assert ssim(a, a).item() == pytest.approx(1.0, abs=1e-5)
    assert ssim(a, b).item() < 0.5
    loss, Ll1 = photometric_loss(a, b, 0.0)
    assert torch.equal(loss, l1_loss(a, b))
    loss, _ = photometric_loss(a, a, 0.2)
    assert loss.item() == pytest.approx(0.0, abs=1e-5)
