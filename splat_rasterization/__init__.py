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

from typing import NamedTuple
import torch.nn as nn
import torch
from splat_rasterization.projection import compute_cov3D, compute_colors_from_sh, project_gaussians
from splat_rasterization.binning import TileBins, bin_gaussians, get_rect, tile_grid
from splat_rasterization.compositing import composite_gaussians

def cpu_deep_copy_tuple(input_tuple):
    copied_tensors = [item.cpu().clone() if isinstance(item, torch.Tensor) else item for item in input_tuple]
    return tuple(copied_tensors)

class GaussianRasterizationSettings(NamedTuple):
    image_height: int
    image_width: int
    tanfovx : float
    tanfovy : float
    fx : float
    fy : float
    cx : float
    cy : float
    bg : torch.Tensor
    scale_modifier : float
    viewmatrix : torch.Tensor
    sh_degree : int
    campos : torch.Tensor
    debug : bool = False
    tile_size : int = 16
    chunk_size : int = 32
    eps2d : float = 0.3
    near_plane : float = 0.01
    min_scale : float = 1e-7
    min_alpha : float = 1.0 / 255.0
    max_alpha : float = 0.99
    max_power : float = 30.0
    transmittance_eps : float = 1e-4
    weight_eps : float = 1e-4

class RasterizerOutput(NamedTuple):
    means2D : torch.Tensor  # (N, 2) pixel coordinates
    depths : torch.Tensor
    final_T : torch.Tensor  # (H, W)
    n_contrib : torch.Tensor  # (H, W)
    max_weight : torch.Tensor  # (N,)
    visible : torch.Tensor  # (N,) bool

def rasterize_gaussians(
    means3D,
    means2D,
    sh,
    colors_precomp,
    opacities,
    scales,
    rotations,
    cov3Ds_precomp,
    raster_settings,
):
    """
    Project, bin and composite. `means2D` must be an (N, 2+) zero tensor; it is added to
    the projected centers so its .grad receives the screen space positional gradient.
    """
    rs = raster_settings
    if cov3Ds_precomp is None:
        cov3Ds_precomp = compute_cov3D(scales, rotations, rs.scale_modifier, rs.min_scale)
    proj_means2D, conics, depths, radii, _ = project_gaussians(
        means3D, cov3Ds_precomp, rs.viewmatrix, rs.fx, rs.fy, rs.cx, rs.cy, rs.tanfovx, rs.tanfovy,
        rs.image_width, rs.image_height, rs.tile_size, rs.eps2d, rs.near_plane)
    if means2D is not None:
        proj_means2D = proj_means2D + means2D[:, :2].to(proj_means2D.dtype)

    if colors_precomp is None:
        colors_precomp = compute_colors_from_sh(sh, means3D, rs.campos, rs.sh_degree)

    args = (
        proj_means2D,
        conics,
        colors_precomp,
        opacities.reshape(-1),
        rs.bg,
        radii,
        depths,
        rs,
    )
    if rs.debug:
        cpu_args = cpu_deep_copy_tuple(args) # Copy them before they can be corrupted
        try:
            color, final_T, n_contrib, max_weight, visible = composite_gaussians(*args)
        except Exception as ex:
            torch.save(cpu_args, "snapshot_fw.dump")
            print("\nAn error occured in forward. Please forward snapshot_fw.dump for debugging.")
            raise ex
    else:
        color, final_T, n_contrib, max_weight, visible = composite_gaussians(*args)

    return color, radii, RasterizerOutput(proj_means2D, depths, final_T, n_contrib, max_weight, visible)

class GaussianRasterizer(nn.Module):
    def __init__(self, raster_settings):
        super().__init__()
        self.raster_settings = raster_settings

    def markVisible(self, positions):
        # Mark visible points (based on frustum culling for camera) with a boolean
        with torch.no_grad():
            viewmatrix = self.raster_settings.viewmatrix.to(positions.dtype)
            p_view = positions @ viewmatrix[:3, :3].T + viewmatrix[:3, 3]
            visible = p_view[:, 2] > self.raster_settings.near_plane
        return visible

    def forward(self, means3D, means2D, opacities, shs = None, colors_precomp = None, scales = None, rotations = None, cov3D_precomp = None):
        """
        :return: (image (C, H, W), radii (N,) int32, RasterizerOutput)
        """
        raster_settings = self.raster_settings

        if (shs is None and colors_precomp is None) or (shs is not None and colors_precomp is not None):
            raise ValueError('Please provide excatly one of either SHs or precomputed colors!')

        if ((scales is None or rotations is None) and cov3D_precomp is None) or ((scales is not None or rotations is not None) and cov3D_precomp is not None):
            raise ValueError('Please provide exactly one of either scale/rotation pair or precomputed 3D covariance!')

        return rasterize_gaussians(
            means3D,
            means2D,
            shs,
            colors_precomp,
            opacities,
            scales,
            rotations,
            cov3D_precomp,
            raster_settings,
        )

__all__ = [
    "GaussianRasterizationSettings", "GaussianRasterizer", "RasterizerOutput", "rasterize_gaussians",
    "TileBins", "bin_gaussians", "get_rect", "tile_grid", "project_gaussians", "compute_cov3D",
    "compute_colors_from_sh", "composite_gaussians",
]
