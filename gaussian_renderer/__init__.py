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
from splat_rasterization import GaussianRasterizationSettings, GaussianRasterizer
from scene.gaussian_model import GaussianModel

def render(viewpoint_camera, pc : GaussianModel, pipe, bg_color : torch.Tensor, scaling_modifier = 1.0, override_color = None):
    """
    Render the scene.

    Background tensor (bg_color) must be on the same device as the splats.
    """
    # Create zero tensor. We will use it to make pytorch return gradients of the 2D (screen-space) means
    screenspace_points = torch.zeros_like(pc.get_xyz, dtype=pc.get_xyz.dtype, requires_grad=True) + 0
    if screenspace_points.requires_grad:
        screenspace_points.retain_grad()

    view = viewpoint_camera.view()
    raster_settings = GaussianRasterizationSettings(
        image_height=view.image_height,
        image_width=view.image_width,
        tanfovx=view.tanfovx,
        tanfovy=view.tanfovy,
        fx=view.fx,
        fy=view.fy,
        cx=view.cx,
        cy=view.cy,
        bg=bg_color,
        scale_modifier=scaling_modifier,
        viewmatrix=view.viewmatrix.to(pc.get_xyz.device),
        sh_degree=pc.active_sh_degree,
        campos=view.camera_center.to(pc.get_xyz.device),
        debug=pipe.debug,
        tile_size=pipe.tile_size,
        chunk_size=pipe.chunk_size,
        eps2d=pipe.eps2d,
        near_plane=pipe.near_plane,
    )

    rasterizer = GaussianRasterizer(raster_settings=raster_settings)

    shs = None
    colors_precomp = None
    if override_color is None:
        shs = pc.get_features
    else:
        colors_precomp = override_color

    rendered_image, radii, aux = rasterizer(
        means3D = pc.get_xyz,
        means2D = screenspace_points,
        shs = shs,
        colors_precomp = colors_precomp,
        opacities = pc.get_opacity,
        scales = pc.get_scaling,
        rotations = pc.get_rotation,
        cov3D_precomp = None)

    # Those Gaussians that were frustum culled or had a radius of 0 were not visible.
    # They will be excluded from value updates used in the splitting criteria.
    return {"render": rendered_image,
            "viewspace_points": screenspace_points,
            "visibility_filter" : radii > 0,
            "radii": radii,
            "max_weight": aux.max_weight,
            "visible": aux.visible,
            "alpha": 1.0 - aux.final_T,
            "n_contrib": aux.n_contrib}
