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

import math
import pytest
import torch
from splat_rasterization import GaussianRasterizationSettings, GaussianRasterizer, rasterize_gaussians, \
    bin_gaussians, project_gaussians, composite_gaussians
from utils.general_utils import build_covariance

DT = torch.float64


def identity_rotations(n):
    rots = torch.zeros((n, 4), dtype=DT)
    rots[:, 0] = 1.0
    return rots


def render_precomp(settings, means3D, colors, opacities, scales, rotations):
    rasterizer = GaussianRasterizer(raster_settings=settings)
    return rasterizer(means3D=means3D, means2D=torch.zeros_like(means3D), opacities=opacities,
                      colors_precomp=colors, scales=scales, rotations=rotations)


def test_covariance_is_symmetric_positive_definite():
    gen = torch.Generator().manual_seed(0)
    scales = torch.rand((64, 3), generator=gen, dtype=DT) * 2.0
    scales[:8] = 1e-12
    rotations = torch.randn((64, 4), generator=gen, dtype=DT)
    cov = build_covariance(scales, rotations, min_scale=1e-7)
    assert torch.allclose(cov, cov.transpose(1, 2))
    assert (torch.linalg.eigvalsh(cov) > 0).all()


def test_projection_of_centered_isotropic_splat(camera):
    view = camera.view()
    means3D = torch.tensor([[0.0, 0.0, 5.0], [1.0, 0.5, 5.0], [0.0, 0.0, -1.0], [100.0, 0.0, 5.0]], dtype=DT)
    cov3D = build_covariance(torch.full((4, 3), 0.5, dtype=DT), identity_rotations(4))
    means2D, conics, depths, radii, cov2D = project_gaussians(
        means3D, cov3D, view.viewmatrix, view.fx, view.fy, view.cx, view.cy, view.tanfovx, view.tanfovy,
        view.image_width, view.image_height, 16)

    assert torch.allclose(means2D[0], torch.tensor([16.5, 12.5], dtype=DT))
    assert torch.allclose(means2D[1], torch.tensor([20.5, 14.5], dtype=DT))
    assert torch.allclose(depths[:2], torch.tensor([5.0, 5.0], dtype=DT))

    # (fx * s / z)^2 + low pass
    var = 4.0 + 0.3
    assert torch.allclose(cov2D[0], torch.tensor([var, 0.0, var], dtype=DT), atol=1e-6)
    assert torch.allclose(conics[0], torch.tensor([1.0 / var, 0.0, 1.0 / var], dtype=DT), atol=1e-6)
    assert radii[0].item() == math.ceil(3.0 * math.sqrt(var + math.sqrt(0.1)))
    # behind the camera, and far outside the image
    assert radii[2].item() == 0
    assert radii[3].item() == 0


def test_binning_orders_by_tile_then_depth_then_index():
    means2D = torch.tensor([[8.0, 8.0], [8.0, 8.0], [16.0, 12.0], [8.0, 8.0], [8.0, 8.0]], dtype=DT)
    radii = torch.tensor([2, 2, 6, 2, 0], dtype=torch.int32)
    depths = torch.tensor([3.0, 1.0, 2.0, 3.0, 0.5], dtype=DT)

    bins = bin_gaussians(means2D, radii, depths, 32, 24, 16)
    assert (bins.grid_x, bins.grid_y) == (2, 2)
    assert bins.gaussian_ids.tolist() == [1, 2, 0, 3, 2, 2, 2]
    assert bins.tile_ids.tolist() == [0, 0, 0, 0, 1, 2, 3]
    assert bins.tile_ranges.tolist() == [[0, 4], [4, 5], [5, 6], [6, 7]]

    again = bin_gaussians(means2D, radii, depths, 32, 24, 16)
    assert torch.equal(bins.gaussian_ids, again.gaussian_ids)
    assert torch.equal(bins.tile_ranges, again.tile_ranges)


def test_binning_without_visible_splats():
    means2D = torch.zeros((3, 2), dtype=DT)
    bins = bin_gaussians(means2D, torch.zeros(3, dtype=torch.int32), torch.ones(3, dtype=DT), 32, 24, 16)
    assert bins.gaussian_ids.numel() == 0
    assert (bins.tile_ranges[:, 1] == bins.tile_ranges[:, 0]).all()


def test_single_opaque_splat_peaks_at_max_alpha(camera, settings_factory):
    bg = torch.tensor([0.2, 0.3, 0.4], dtype=DT)
    settings = settings_factory(camera, bg)
    color = torch.tensor([[1.0, 0.5, 0.25]], dtype=DT)
    image, radii, aux = render_precomp(settings, torch.tensor([[0.0, 0.0, 5.0]], dtype=DT), color,
                                       torch.ones((1, 1), dtype=DT), torch.full((1, 3), 0.5, dtype=DT),
                                       identity_rotations(1))

    assert image.shape == (3, 24, 32)
    assert torch.allclose(image[:, 12, 16], 0.99 * color[0] + 0.01 * bg)
    # far corner is not reached by the 3 sigma footprint
    assert torch.equal(image[:, 0, 0], bg)
    assert aux.n_contrib[12, 16].item() == 1
    assert aux.n_contrib[0, 0].item() == 0
    assert aux.visible.tolist() == [True]
    assert radii[0].item() > 0


def test_single_splat_falloff_matches_the_gaussian_kernel(camera, settings_factory):
    settings = settings_factory(camera)
    color = torch.tensor([[1.0, 0.5, 0.25]], dtype=DT)
    opacity = 0.5
    image, _, _ = render_precomp(settings, torch.tensor([[0.0, 0.0, 5.0]], dtype=DT), color,
                                 torch.full((1, 1), opacity, dtype=DT), torch.full((1, 3), 0.5, dtype=DT),
                                 identity_rotations(1))

    # projected center (16.5, 12.5), isotropic screen variance (20 * 0.5 / 5)^2 plus the low pass
    var = 4.0 + 0.3
    ys, xs = torch.meshgrid(torch.arange(24, dtype=DT) + 0.5, torch.arange(32, dtype=DT) + 0.5, indexing="ij")
    d2 = (xs - 16.5) ** 2 + (ys - 12.5) ** 2
    alpha = opacity * torch.exp(-d2 / (2.0 * var))
    alpha = torch.where(alpha >= 1.0 / 255.0, alpha, torch.zeros_like(alpha))
    expected = alpha.unsqueeze(0) * color[0].view(3, 1, 1)
    assert torch.allclose(image, expected, atol=1e-12)


def test_two_splats_follow_the_compositing_recurrence(camera, settings_factory):
    bg = torch.tensor([0.1, 0.2, 0.3], dtype=DT)
    settings = settings_factory(camera, bg)
    # listed back to front on purpose, depth decides the order
    means3D = torch.tensor([[0.0, 0.0, 6.0], [0.0, 0.0, 4.0]], dtype=DT)
    colors = torch.tensor([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0]], dtype=DT)
    opacities = torch.tensor([[0.6], [0.5]], dtype=DT)
    image, _, aux = render_precomp(settings, means3D, colors, opacities, torch.full((2, 3), 0.3, dtype=DT),
                                   identity_rotations(2))

    expected = 0.5 * colors[1] + 0.5 * 0.6 * colors[0] + 0.5 * 0.4 * bg
    assert torch.allclose(image[:, 12, 16], expected)
    assert aux.final_T[12, 16].item() == pytest.approx(0.2)
    assert aux.n_contrib[12, 16].item() == 2


def test_pixel_stops_before_transmittance_drops_below_threshold(camera, settings_factory):
    bg = torch.tensor([1.0, 1.0, 1.0], dtype=DT)
    settings = settings_factory(camera, bg)
    n = 5
    means3D = torch.zeros((n, 3), dtype=DT)
    means3D[:, 2] = torch.arange(3, 3 + n, dtype=DT)
    colors = torch.rand((n, 3), generator=torch.Generator().manual_seed(3), dtype=DT)
    image, _, aux = render_precomp(settings, means3D, colors, torch.full((n, 1), 0.95, dtype=DT),
                                   torch.full((n, 3), 0.3, dtype=DT), identity_rotations(n))

    # 0.05^3 stays above 1e-4, a fourth splat would push T to 6.25e-6
    assert aux.n_contrib[12, 16].item() == 3
    assert aux.final_T[12, 16].item() == pytest.approx(0.05 ** 3)
    weights = torch.tensor([0.95, 0.05 * 0.95, 0.05 * 0.05 * 0.95], dtype=DT)
    expected = (weights[:, None] * colors[:3]).sum(dim=0) + 0.05 ** 3 * bg
    assert torch.allclose(image[:, 12, 16], expected)


def test_transmittance_and_color_bounds(camera, settings_factory, gaussians):
    bg = torch.tensor([0.5, 0.5, 0.5], dtype=DT)
    settings = settings_factory(camera, bg)
    colors = torch.rand((gaussians.num_points, 3), generator=torch.Generator().manual_seed(1), dtype=DT)
    image, _, aux = render_precomp(settings, gaussians.get_xyz, colors, gaussians.get_opacity,
                                   gaussians.get_scaling, gaussians.get_rotation)

    assert (aux.final_T <= 1.0).all()
    assert (aux.final_T >= settings.transmittance_eps).all()
    assert (image >= 0.0).all() and (image <= 1.0 + 1e-12).all()
    assert (aux.n_contrib <= gaussians.num_points).all()
    assert aux.visible.any()


@pytest.mark.parametrize("chunk_size", [1, 3, 64])
def test_image_and_gradients_do_not_depend_on_chunking(camera, settings_factory, gaussians_factory, chunk_size):
    def render_and_grad(**kwargs):
        g = gaussians_factory(num_points=25, seed=4)
        settings = settings_factory(camera, torch.tensor([0.1, 0.1, 0.1], dtype=DT), **kwargs)
        colors = torch.rand((g.num_points, 3), generator=torch.Generator().manual_seed(5), dtype=DT)
        image, _, _ = render_precomp(settings, g.get_xyz, colors, g.get_opacity, g.get_scaling, g.get_rotation)
        image.square().sum().backward()
        return image.detach(), g._xyz.grad.clone(), g._opacity.grad.clone()

    reference = render_and_grad(chunk_size=32)
    other = render_and_grad(chunk_size=chunk_size)
    for a, b in zip(reference, other):
        assert torch.allclose(a, b, atol=1e-10)


def test_compositing_gradcheck(camera_factory, settings_factory):
    cam = camera_factory(width=8, height=8, fx=10.0, fy=10.0)
    settings = settings_factory(cam, tile_size=4, chunk_size=2, min_alpha=0.0)
    gen = torch.Generator().manual_seed(7)
    n = 4
    means2D = (torch.rand((n, 2), generator=gen, dtype=DT) * 6.0 + 1.0).requires_grad_(True)
    conics = torch.tensor([[0.30, 0.05, 0.25], [0.20, -0.02, 0.35], [0.40, 0.00, 0.40], [0.15, 0.03, 0.22]],
                          dtype=DT).requires_grad_(True)
    colors = torch.rand((n, 3), generator=gen, dtype=DT).requires_grad_(True)
    opacities = (torch.rand(n, generator=gen, dtype=DT) * 0.5 + 0.2).requires_grad_(True)
    background = torch.tensor([0.3, 0.6, 0.9], dtype=DT).requires_grad_(True)
    radii = torch.full((n,), 20, dtype=torch.int32)
    depths = torch.tensor([2.0, 1.0, 4.0, 3.0], dtype=DT)

    def fn(means2D, conics, colors, opacities, background):
        return composite_gaussians(means2D, conics, colors, opacities, background, radii, depths, settings)[0]

    assert torch.autograd.gradcheck(fn, (means2D, conics, colors, opacities, background), eps=1e-6, atol=1e-6)


def test_full_pipeline_gradcheck(camera_factory, settings_factory):
    cam = camera_factory(width=8, height=8, fx=10.0, fy=10.0)
    settings = settings_factory(cam, tile_size=4, chunk_size=2, min_alpha=0.0)
    gen = torch.Generator().manual_seed(11)
    n = 3
    means3D = torch.tensor([[-0.3, 0.2, 4.0], [0.25, -0.1, 4.5], [0.05, 0.3, 5.0]], dtype=DT).requires_grad_(True)
    scales = (torch.rand((n, 3), generator=gen, dtype=DT) * 0.3 + 1.2).requires_grad_(True)
    rotations = torch.randn((n, 4), generator=gen, dtype=DT).requires_grad_(True)
    colors = torch.rand((n, 3), generator=gen, dtype=DT).requires_grad_(True)
    opacities = (torch.rand((n, 1), generator=gen, dtype=DT) * 0.4 + 0.2).requires_grad_(True)

    def fn(means3D, scales, rotations, colors, opacities):
        image, _, _ = rasterize_gaussians(means3D, None, None, colors, opacities, scales, rotations, None, settings)
        return image

    assert torch.autograd.gradcheck(fn, (means3D, scales, rotations, colors, opacities), eps=1e-6, atol=1e-5)


def test_screenspace_gradient_reaches_means2D(camera, settings_factory, gaussians):
    settings = settings_factory(camera)
    screenspace = torch.zeros_like(gaussians.get_xyz, requires_grad=True)
    rasterizer = GaussianRasterizer(raster_settings=settings)
    image, radii, _ = rasterizer(means3D=gaussians.get_xyz, means2D=screenspace, opacities=gaussians.get_opacity,
                                 shs=gaussians.get_features, scales=gaussians.get_scaling,
                                 rotations=gaussians.get_rotation)
    image.sum().backward()
    assert screenspace.grad is not None
    assert screenspace.grad[:, 2].abs().sum().item() == 0.0
    assert screenspace.grad[radii > 0, :2].abs().sum().item() > 0.0


def test_rasterizer_rejects_ambiguous_inputs(camera, settings_factory, gaussians):
    rasterizer = GaussianRasterizer(raster_settings=settings_factory(camera))
    with pytest.raises(ValueError):
        rasterizer(means3D=gaussians.get_xyz, means2D=None, opacities=gaussians.get_opacity,
                   shs=gaussians.get_features, colors_precomp=torch.zeros_like(gaussians.get_xyz),
                   scales=gaussians.get_scaling, rotations=gaussians.get_rotation)
    with pytest.raises(ValueError):
        rasterizer(means3D=gaussians.get_xyz, means2D=None, opacities=gaussians.get_opacity,
                   shs=gaussians.get_features, scales=gaussians.get_scaling, rotations=None)


def test_mark_visible_uses_near_plane(camera, settings_factory):
    rasterizer = GaussianRasterizer(raster_settings=settings_factory(camera))
    positions = torch.tensor([[0.0, 0.0, 2.0], [0.0, 0.0, -2.0], [0.0, 0.0, 0.001]], dtype=DT)
    assert rasterizer.markVisible(positions).tolist() == [True, False, False]


def test_settings_need_only_the_view_transform_and_intrinsics(camera, settings_factory):
    # projection goes through viewmatrix and fx/fy/cx/cy, there is no clip space matrix to keep in sync
    assert "projmatrix" not in GaussianRasterizationSettings._fields
    settings = settings_factory(camera)
    image, radii, _ = render_precomp(settings, torch.tensor([[1.0, 0.5, 5.0]], dtype=DT), torch.ones((1, 3), dtype=DT),
                                     torch.full((1, 1), 0.5, dtype=DT), torch.full((1, 3), 0.5, dtype=DT),
                                     identity_rotations(1))
    # (fx * x / z + cx, fy * y / z + cy) lands on pixel (20, 14)
    assert image[0].argmax().item() == 14 * 32 + 20
    assert radii[0].item() > 0
