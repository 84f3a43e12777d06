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

import numpy as np
import pytest
import torch
from gaussian_renderer import render
from scene.gaussian_model import GaussianModel, distKNN2
from utils.errors import SplatStoreInvariantError


def test_knn_distance_on_a_line():
    points = torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [3.0, 0.0, 0.0]], dtype=torch.float64)
    dist2 = distKNN2(points, chunk_size=3)
    assert dist2[0].item() == pytest.approx((1.0 + 4.0 + 9.0) / 3.0)
    assert dist2[1].item() == pytest.approx((1.0 + 1.0 + 4.0) / 3.0)


def test_create_from_pcd_initial_state(gaussians):
    n = gaussians.num_points
    assert gaussians.get_xyz.shape == (n, 3)
    assert gaussians.get_features.shape == (n, 1, 3)
    assert torch.allclose(gaussians.get_opacity, torch.full((n, 1), 0.5, dtype=torch.float64))
    assert torch.allclose(gaussians.get_rotation, torch.tensor([[1.0, 0.0, 0.0, 0.0]], dtype=torch.float64).expand(n, 4))
    scaling = gaussians.get_scaling
    assert torch.allclose(scaling[:, 0], scaling[:, 1]) and torch.allclose(scaling[:, 0], scaling[:, 2])
    gaussians.check_invariants()


def test_covariance_is_positive_definite(gaussians):
    cov = gaussians.get_covariance()
    assert cov.shape == (gaussians.num_points, 3, 3)
    assert (torch.linalg.eigvalsh(cov) > 0).all()


def test_prune_keeps_survivor_order_and_invariants(gaussians, opt, populate_optimizer):
    gaussians.training_setup(opt)
    populate_optimizer(gaussians)
    xyz = gaussians.get_xyz.detach().clone()
    gaussians.max_weight = torch.arange(gaussians.num_points, dtype=gaussians.dtype)

    mask = torch.zeros(gaussians.num_points, dtype=torch.bool)
    mask[::3] = True
    gaussians.prune_points(mask)

    assert gaussians.num_points == int((~mask).sum())
    assert torch.equal(gaussians.get_xyz.detach(), xyz[~mask])
    assert torch.equal(gaussians.max_weight, torch.arange(len(mask), dtype=gaussians.dtype)[~mask])
    gaussians.check_invariants()


def test_append_keeps_existing_statistics(gaussians, opt, populate_optimizer):
    gaussians.training_setup(opt)
    populate_optimizer(gaussians)
    n = gaussians.num_points
    gaussians.max_radii2D[:] = 3.0
    gaussians.denom[:] = 2.0

    idx = torch.arange(4)
    gaussians.densification_postfix(gaussians._xyz[idx].detach(), gaussians._features_dc[idx].detach(),
                                    gaussians._features_rest[idx].detach(), gaussians._opacity[idx].detach(),
                                    gaussians._scaling[idx].detach(), gaussians._rotation[idx].detach())

    assert gaussians.num_points == n + 4
    assert (gaussians.max_radii2D[:n] == 3.0).all() and (gaussians.max_radii2D[n:] == 0.0).all()
    assert (gaussians.denom[:n] == 2.0).all() and (gaussians.denom[n:] == 0.0).all()
    for group in gaussians.optimizer.param_groups:
        state = gaussians.optimizer.state[group["params"][0]]
        assert state["exp_avg"].shape[0] == n + 4
        assert (state["exp_avg"][n:] == 0).all()
    gaussians.check_invariants()


def test_check_invariants_reports_mismatched_rows(gaussians, opt, populate_optimizer):
    gaussians.training_setup(opt)
    populate_optimizer(gaussians)
    gaussians.check_invariants()

    gaussians.visibility_count = gaussians.visibility_count[:-1]
    with pytest.raises(SplatStoreInvariantError):
        gaussians.check_invariants()
    gaussians.visibility_count = torch.zeros(gaussians.num_points, dtype=torch.int32)

    state = gaussians.optimizer.state[gaussians._opacity]
    state["exp_avg"] = state["exp_avg"][:-2]
    with pytest.raises(SplatStoreInvariantError):
        gaussians.check_invariants()


def test_reset_opacity_caps_at_one_percent(gaussians, opt, populate_optimizer):
    gaussians.training_setup(opt)
    populate_optimizer(gaussians)
    gaussians.reset_opacity()
    assert torch.allclose(gaussians.get_opacity, torch.full_like(gaussians.get_opacity, 0.01))
    state = gaussians.optimizer.state[gaussians._opacity]
    assert (state["exp_avg"] == 0).all()


def test_checkpoint_round_trip_renders_identically(tmp_path, gaussians_factory, camera, opt, pipe):
    gaussians = gaussians_factory(num_points=30, seed=2)
    gaussians.training_setup(opt)
    bg = torch.zeros(3, dtype=gaussians.dtype)

    # one real step so the Adam moments are non trivial
    image = render(camera, gaussians, pipe, bg)["render"]
    (image - camera.original_image.to(image.dtype)).abs().mean().backward()
    gaussians.optimizer.step()
    gaussians.optimizer.zero_grad(set_to_none=True)

    path = tmp_path / "chkpnt1.pth"
    torch.save((gaussians.capture(), 1), path)
    (model_params, iteration) = torch.load(path, weights_only=False)
    restored = GaussianModel(0, device="cpu", dtype=torch.float64)
    restored.restore(model_params, opt)

    assert iteration == 1
    assert restored.num_points == gaussians.num_points
    with torch.no_grad():
        a = render(camera, gaussians, pipe, bg)["render"]
        b = render(camera, restored, pipe, bg)["render"]
    assert torch.equal(a, b)
    state_a = gaussians.optimizer.state[gaussians._xyz]
    state_b = restored.optimizer.state[restored._xyz]
    assert torch.equal(state_a["exp_avg"], state_b["exp_avg"])


def test_ply_round_trip(tmp_path, gaussians_factory):
    gaussians = gaussians_factory(num_points=12, sh_degree=1)
    path = str(tmp_path / "point_cloud" / "iteration_7" / "point_cloud.ply")
    gaussians.save_ply(path)

    loaded = GaussianModel(1, device="cpu", dtype=torch.float64)
    loaded.load_ply(path)
    assert loaded.num_points == 12
    assert loaded.active_sh_degree == 1
    assert np.allclose(loaded.get_xyz.detach().numpy(), gaussians.get_xyz.detach().numpy(), atol=1e-6)
    assert np.allclose(loaded._opacity.detach().numpy(), gaussians._opacity.detach().numpy(), atol=1e-6)
    assert loaded.get_features.shape == gaussians.get_features.shape
    loaded.check_invariants()


def test_sh_degree_grows_to_maximum(gaussians_factory):
    gaussians = gaussians_factory(num_points=5, sh_degree=2)
    for _ in range(5):
        gaussians.oneupSHdegree()
    assert gaussians.active_sh_degree == 2
