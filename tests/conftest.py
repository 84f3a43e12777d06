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

from argparse import ArgumentParser
from types import SimpleNamespace
import numpy as np
import pytest
import torch
from arguments import ModelParams, OptimizationParams, PipelineParams
from scene.cameras import Camera
from scene.gaussian_model import GaussianModel
from splat_rasterization import GaussianRasterizationSettings
from utils.graphics_utils import BasicPointCloud


def _parsed_group(group_cls):
    parser = ArgumentParser()
    group = group_cls(parser)
    return group.extract(parser.parse_args([]))


@pytest.fixture
def opt():
    return _parsed_group(OptimizationParams)


@pytest.fixture
def pipe():
    return _parsed_group(PipelineParams)


@pytest.fixture
def model_params(tmp_path):
    parser = ArgumentParser()
    lp = ModelParams(parser)
    args = parser.parse_args(["--source_path", str(tmp_path / "source"), "--model_path", str(tmp_path / "output"),
                              "--data_device", "cpu"])
    return lp.extract(args)


def make_camera(width=32, height=24, fx=20.0, fy=20.0, cx=None, cy=None, R=None, T=None, image=None, uid=0):
    """Pinhole camera at the origin looking down +z unless R/T say otherwise."""
    if cx is None:
        cx = width / 2.0 + 0.5
    if cy is None:
        cy = height / 2.0 + 0.5
    if image is None:
        image = torch.rand((3, height, width), generator=torch.Generator().manual_seed(uid))
    return Camera(colmap_id=uid, R=np.eye(3) if R is None else R, T=np.zeros(3) if T is None else T,
                  fx=fx, fy=fy, cx=cx, cy=cy, width=width, height=height,
                  image_name="cam{}".format(uid), uid=uid, image=image, data_device="cpu")


@pytest.fixture
def camera():
    return make_camera()


@pytest.fixture
def camera_factory():
    return make_camera


def make_settings(cam, bg=None, dtype=torch.float64, **kwargs):
    view = cam.view()
    if bg is None:
        bg = torch.zeros(3, dtype=dtype)
    return GaussianRasterizationSettings(
        image_height=view.image_height,
        image_width=view.image_width,
        tanfovx=view.tanfovx,
        tanfovy=view.tanfovy,
        fx=view.fx,
        fy=view.fy,
        cx=view.cx,
        cy=view.cy,
        bg=bg,
        scale_modifier=1.0,
        viewmatrix=view.viewmatrix,
        sh_degree=0,
        campos=view.camera_center,
        **kwargs
    )


@pytest.fixture
def settings_factory():
    return make_settings


def make_gaussians(num_points=40, seed=0, depth=(3.0, 5.0), spread=1.0, sh_degree=0, dtype=torch.float64):
    """Random splats inside the view frustum of make_camera()."""
    rng = np.random.default_rng(seed)
    xyz = np.stack([rng.uniform(-spread, spread, num_points),
                    rng.uniform(-spread, spread, num_points) * 0.75,
                    rng.uniform(depth[0], depth[1], num_points)], axis=-1)
    rgb = rng.uniform(0.0, 1.0, (num_points, 3))
    gaussians = GaussianModel(sh_degree, device="cpu", dtype=dtype)
    gaussians.create_from_pcd(BasicPointCloud(points=xyz, colors=rgb, normals=np.zeros_like(xyz)), 1.0, 0.5)
    return gaussians


@pytest.fixture
def gaussians():
    return make_gaussians()


@pytest.fixture
def gaussians_factory():
    return make_gaussians


def populate_optimizer_state(gaussians):
    """One zero-gradient Adam step so every group carries moment buffers."""
    for group in gaussians.optimizer.param_groups:
        group["params"][0].grad = torch.zeros_like(group["params"][0])
    gaussians.optimizer.step()
    gaussians.optimizer.zero_grad(set_to_none=True)


@pytest.fixture
def populate_optimizer():
    return populate_optimizer_state


class FakeScene:
    """Just enough of Scene for the trainer: cameras, splats and an output folder."""

    def __init__(self, gaussians, cameras, model_path, extent=1.0):
        self.gaussians = gaussians
        self.train_cameras = cameras
        self.model_path = str(model_path)
        self.cameras_extent = extent
        self.saved = []

    def getTrainCameras(self):
        return self.train_cameras

    def getTestCameras(self):
        return []

    def save(self, iteration):
        self.saved.append(iteration)


@pytest.fixture
def fake_scene_factory(tmp_path):
    def factory(gaussians, cameras):
        return FakeScene(gaussians, cameras, tmp_path / "model")
    return factory


@pytest.fixture
def dataset():
    return SimpleNamespace(white_background=False)
