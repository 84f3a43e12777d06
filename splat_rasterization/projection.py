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

import torch
from utils.general_utils import build_covariance
from utils.sh_utils import eval_sh
from splat_rasterization.binning import get_rect, tile_grid

def compute_cov3D(scales, rotations, scale_modifier=1.0, min_scale=1e-7):
    return build_covariance(scales * scale_modifier, rotations, min_scale)

def compute_colors_from_sh(shs, means3D, campos, sh_degree):
    """
    View dependent RGB from SH coefficients (N, K, 3), offset by 0.5 and clamped at 0.
    """
    shs_view = shs.transpose(1, 2)
    dir_pp = means3D - campos.to(means3D.dtype).unsqueeze(0)
    dir_pp_normalized = dir_pp / dir_pp.norm(dim=1, keepdim=True).clamp_min(1e-12)
    sh2rgb = eval_sh(sh_degree, shs_view, dir_pp_normalized)
    return torch.clamp_min(sh2rgb + 0.5, 0.0)

def project_gaussians(means3D, cov3D, viewmatrix, fx, fy, cx, cy, tanfovx, tanfovy,
                      image_width, image_height, tile_size, eps2d=0.3, near_plane=0.01):
    """
    EWA projection of 3D Gaussians to the image plane.

    Differentiable through plain torch ops. Culled splats (behind the near plane,
    degenerate footprint, or touching no tile) get radius 0; their other outputs
    are finite but meaningless.

    :return: means2D (N, 2) in pixels, conics (N, 3) packed inverse 2D covariance
        (a, b, c), depths (N,), radii (N,) int32, cov2D (N, 3) packed (xx, xy, yy).
    """
    viewmatrix = viewmatrix.to(means3D.dtype)
    R_v = viewmatrix[:3, :3]
    t_v = viewmatrix[:3, 3]
    p_view = means3D @ R_v.T + t_v
    x, y, z = p_view[:, 0], p_view[:, 1], p_view[:, 2]

    in_front = z > near_plane
    z_safe = torch.where(in_front, z, torch.ones_like(z))

    # Keep the Jacobian of far off-screen splats from blowing up
    lim_x_pos = (image_width - cx) / fx + 0.3 * tanfovx
    lim_x_neg = cx / fx + 0.3 * tanfovx
    lim_y_pos = (image_height - cy) / fy + 0.3 * tanfovy
    lim_y_neg = cy / fy + 0.3 * tanfovy
    tx = (x / z_safe).clamp(-lim_x_neg, lim_x_pos) * z_safe
    ty = (y / z_safe).clamp(-lim_y_neg, lim_y_pos) * z_safe

    zeros = torch.zeros_like(z_safe)
    J = torch.stack([
        torch.stack([fx / z_safe, zeros, -fx * tx / (z_safe * z_safe)], dim=-1),
        torch.stack([zeros, fy / z_safe, -fy * ty / (z_safe * z_safe)], dim=-1),
    ], dim=-2)  # (N, 2, 3)

    T = J @ R_v
    cov = T @ cov3D @ T.transpose(1, 2)

    a = cov[:, 0, 0] + eps2d
    b = cov[:, 0, 1]
    c = cov[:, 1, 1] + eps2d
    det = a * c - b * b
    valid = in_front & (det > 0)
    det_safe = torch.where(valid, det, torch.ones_like(det))
    conics = torch.stack([c / det_safe, -b / det_safe, a / det_safe], dim=-1)

    means2D = torch.stack([fx * x / z_safe + cx, fy * y / z_safe + cy], dim=-1)

    with torch.no_grad():
        mid = 0.5 * (a + c)
        lambda1 = mid + torch.sqrt(torch.clamp_min(mid * mid - det, 0.1))
        radii = torch.ceil(3.0 * torch.sqrt(torch.clamp_min(lambda1, 0.0)))
        radii = torch.where(valid, radii, torch.zeros_like(radii)).to(torch.int32)

        grid_x, grid_y = tile_grid(image_width, image_height, tile_size)
        rect_min, rect_max = get_rect(means2D.detach(), radii, grid_x, grid_y, tile_size)
        touched = ((rect_max - rect_min).prod(dim=-1) > 0)
        radii = torch.where(touched, radii, torch.zeros_like(radii))

    cov2D = torch.stack([a, b, c], dim=-1)
    return means2D, conics, z, radii, cov2D
