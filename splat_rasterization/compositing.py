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

"""
Tile based alpha compositing with an analytic backward pass.

Every tile holds its depth sorted splat list, padded to the longest list with -1.
Pixels are processed for all tiles at once, `chunk_size` splats of the lists at a
time, front to back. Per pixel:

    alpha_i = min(max_alpha, o_i * exp(power_i)),   skipped if alpha_i < min_alpha
    T_i     = prod_{j<i} (1 - alpha_j)
    C       = sum_i T_i alpha_i c_i + T_final * bg

and a pixel stops at the first splat that would push T below transmittance_eps.
"""

import torch
from splat_rasterization.binning import bin_gaussians

def _exclusive_cumprod(x):
    ones = torch.ones_like(x[..., :1])
    return torch.cat([ones, torch.cumprod(x[..., :-1], dim=-1)], dim=-1)

def _tile_lists(bins):
    counts = bins.tile_ranges[:, 1] - bins.tile_ranges[:, 0]
    max_count = int(counts.max().item()) if counts.numel() > 0 else 0
    if max_count == 0:
        return torch.full((counts.shape[0], 0), -1, dtype=torch.long, device=counts.device)
    pos = torch.arange(max_count, device=counts.device).unsqueeze(0)
    mask = pos < counts.unsqueeze(1)
    idx = torch.where(mask, bins.tile_ranges[:, :1] + pos, torch.zeros_like(pos))
    return torch.where(mask, bins.gaussian_ids[idx], torch.full_like(idx, -1))

def _tile_pixels(grid_x, grid_y, tile_size, image_width, image_height, dtype, device):
    """Pixel centers (num_tiles, P, 2) per tile and a mask of pixels inside the image."""
    tiles = torch.arange(grid_x * grid_y, device=device)
    tile_x = (tiles % grid_x).unsqueeze(1)
    tile_y = torch.div(tiles, grid_x, rounding_mode="floor").unsqueeze(1)
    local = torch.arange(tile_size * tile_size, device=device).unsqueeze(0)
    px = tile_x * tile_size + local % tile_size
    py = tile_y * tile_size + torch.div(local, tile_size, rounding_mode="floor")
    inside = (px < image_width) & (py < image_height)
    pix = torch.stack([px, py], dim=-1).to(dtype) + 0.5
    return pix, inside

def _tiles_to_image(values, grid_x, grid_y, tile_size, image_width, image_height):
    """(num_tiles, P, C) -> (C, H, W)"""
    C = values.shape[-1]
    values = values.reshape(grid_y, grid_x, tile_size, tile_size, C)
    values = values.permute(4, 0, 2, 1, 3).reshape(C, grid_y * tile_size, grid_x * tile_size)
    return values[:, :image_height, :image_width]

def _image_to_tiles(image, grid_x, grid_y, tile_size):
    """(C, H, W) -> (num_tiles, P, C), zero padded."""
    C, H, W = image.shape
    padded = image.new_zeros((C, grid_y * tile_size, grid_x * tile_size))
    padded[:, :H, :W] = image
    padded = padded.reshape(C, grid_y, tile_size, grid_x, tile_size)
    return padded.permute(1, 3, 2, 4, 0).reshape(grid_y * grid_x, tile_size * tile_size, C)

def _chunk_alpha(ids, pix, means2D, conics, opacities, settings):
    """
    Alpha of every (pixel, splat) pair of a chunk of the tile lists.

    :param ids: (num_tiles, c) splat indices, -1 for padding.
    :return: dict of (num_tiles, P, c) tensors plus the gathered splat ids.
    """
    listed = ids >= 0
    gid = ids.clamp_min(0)
    mu = means2D[gid]
    con = conics[gid]
    op = opacities[gid]

    dx = pix[..., 0].unsqueeze(-1) - mu[..., 0].unsqueeze(1)
    dy = pix[..., 1].unsqueeze(-1) - mu[..., 1].unsqueeze(1)
    ca = con[..., 0].unsqueeze(1)
    cb = con[..., 1].unsqueeze(1)
    cc = con[..., 2].unsqueeze(1)
    power = -0.5 * (ca * dx * dx + cc * dy * dy) - cb * dx * dy

    keep = listed.unsqueeze(1) & (power <= 0.0) & (power > -settings.max_power)
    G = torch.exp(power.clamp(-settings.max_power, 0.0))
    raw = op.unsqueeze(1) * G
    alpha = raw.clamp(max=settings.max_alpha)
    keep = keep & (alpha >= settings.min_alpha)
    alpha = torch.where(keep, alpha, torch.zeros_like(alpha))
    return {
        "gid": gid, "listed": listed, "alpha": alpha, "keep": keep, "G": G,
        "clamped": raw > settings.max_alpha, "dx": dx, "dy": dy,
        "ca": ca, "cb": cb, "cc": cc,
    }

def _contributing(chunk, T, done, settings):
    """
    Restrict the kept pairs to the ones composited before the pixel saturates.
    Returns the contribution mask and the per pixel saturation flag inside this chunk.
    """
    alpha = chunk["alpha"]
    one_minus = 1.0 - alpha
    T_before = T.unsqueeze(-1) * _exclusive_cumprod(one_minus)
    stop = chunk["keep"] & (T_before * one_minus < settings.transmittance_eps)
    stopped = torch.cumsum(stop.to(torch.int32), dim=-1) > 0
    contrib = chunk["keep"] & ~stopped & ~done.unsqueeze(-1)
    return contrib, stopped[..., -1]

def _forward_pass(means2D, conics, colors, opacities, radii, depths, settings):
    device = means2D.device
    dtype = means2D.dtype
    N = means2D.shape[0]
    C = colors.shape[-1]

    bins = bin_gaussians(means2D, radii, depths, settings.image_width, settings.image_height, settings.tile_size)
    lists = _tile_lists(bins)
    pix, inside = _tile_pixels(bins.grid_x, bins.grid_y, settings.tile_size,
                               settings.image_width, settings.image_height, dtype, device)
    num_tiles, P = pix.shape[0], pix.shape[1]

    T = torch.ones((num_tiles, P), dtype=dtype, device=device)
    done = torch.zeros((num_tiles, P), dtype=torch.bool, device=device)
    accum = torch.zeros((num_tiles, P, C), dtype=dtype, device=device)
    n_contrib = torch.zeros((num_tiles, P), dtype=torch.int32, device=device)
    max_weight = torch.zeros(N, dtype=dtype, device=device)

    for start in range(0, lists.shape[1], settings.chunk_size):
        ids = lists[:, start:start + settings.chunk_size]
        chunk = _chunk_alpha(ids, pix, means2D, conics, opacities, settings)
        contrib, saturated = _contributing(chunk, T, done, settings)

        alpha = torch.where(contrib, chunk["alpha"], torch.zeros_like(chunk["alpha"]))
        one_minus = 1.0 - alpha
        weight = T.unsqueeze(-1) * _exclusive_cumprod(one_minus) * alpha
        accum = accum + torch.einsum("tpc,tck->tpk", weight, colors[chunk["gid"]])
        T = T * torch.prod(one_minus, dim=-1)
        done = done | saturated
        n_contrib = n_contrib + contrib.sum(dim=-1).to(torch.int32)

        # largest blend weight each splat reached on any pixel of the image
        weight = torch.where(inside.unsqueeze(-1), weight, torch.zeros_like(weight))
        tile_max = weight.amax(dim=1)
        listed = chunk["listed"]
        max_weight.scatter_reduce_(0, chunk["gid"][listed], tile_max[listed], reduce="amax")

    return bins, lists, pix, inside, accum, T, n_contrib, max_weight

class _RasterizeGaussians(torch.autograd.Function):
    @staticmethod
    def forward(
        ctx,
        means2D,
        conics,
        colors,
        opacities,
        background,
        radii,
        depths,
        raster_settings,
    ):
        bins, lists, pix, inside, accum, T, n_contrib, max_weight = _forward_pass(
            means2D, conics, colors, opacities, radii, depths, raster_settings)

        H, W = raster_settings.image_height, raster_settings.image_width
        tile_size = raster_settings.tile_size
        bg = background.to(accum.dtype)
        pixels = accum + T.unsqueeze(-1) * bg
        color = _tiles_to_image(pixels, bins.grid_x, bins.grid_y, tile_size, W, H)
        final_T = _tiles_to_image(T.unsqueeze(-1), bins.grid_x, bins.grid_y, tile_size, W, H)[0]
        contrib_count = _tiles_to_image(n_contrib.unsqueeze(-1), bins.grid_x, bins.grid_y, tile_size, W, H)[0]
        visible = max_weight > raster_settings.weight_eps

        ctx.raster_settings = raster_settings
        ctx.grid = (bins.grid_x, bins.grid_y)
        ctx.save_for_backward(means2D, conics, colors, opacities, background, lists, pix, T)
        ctx.mark_non_differentiable(final_T, contrib_count, max_weight, visible)
        return color.contiguous(), final_T.contiguous(), contrib_count.contiguous(), max_weight, visible

    @staticmethod
    def backward(ctx, grad_out_color, _final_T, _n_contrib, _max_weight, _visible):
        """
        Reverse of the compositing recurrence. With S_i the color composited behind
        splat i on a pixel (S_i = sum_{j>i} T_j alpha_j c_j),

            dC/dc_i     = T_i alpha_i
            dC/dalpha_i = T_i c_i - (S_i + T_final bg) / (1 - alpha_i)

        Chunks are walked back to front carrying S. Per splat gradients are summed
        over pixels with index_add_, so the result does not depend on pixel order.
        """
        settings = ctx.raster_settings
        grid_x, grid_y = ctx.grid
        means2D, conics, colors, opacities, background, lists, pix, T_final = ctx.saved_tensors
        dtype = means2D.dtype
        device = means2D.device
        num_tiles, P = pix.shape[0], pix.shape[1]
        C = colors.shape[-1]

        grad_means2D = torch.zeros_like(means2D)
        grad_conics = torch.zeros_like(conics)
        grad_colors = torch.zeros_like(colors)
        grad_opacities = torch.zeros_like(opacities)

        g = _image_to_tiles(grad_out_color.to(dtype), grid_x, grid_y, settings.tile_size)
        bg = background.to(dtype)
        grad_background = (g * T_final.unsqueeze(-1)).sum(dim=(0, 1)).to(background.dtype)

        # front to back sweep, only to recover transmittance at every chunk start
        starts = list(range(0, lists.shape[1], settings.chunk_size))
        T = torch.ones((num_tiles, P), dtype=dtype, device=device)
        done = torch.zeros((num_tiles, P), dtype=torch.bool, device=device)
        chunk_state = []
        for start in starts:
            chunk_state.append((T, done))
            ids = lists[:, start:start + settings.chunk_size]
            chunk = _chunk_alpha(ids, pix, means2D, conics, opacities, settings)
            contrib, saturated = _contributing(chunk, T, done, settings)
            alpha = torch.where(contrib, chunk["alpha"], torch.zeros_like(chunk["alpha"]))
            T = T * torch.prod(1.0 - alpha, dim=-1)
            done = done | saturated

        background_term = (T_final.unsqueeze(-1) * bg).unsqueeze(2)
        behind = torch.zeros((num_tiles, P, C), dtype=dtype, device=device)
        for start, (T_start, done_start) in zip(reversed(starts), reversed(chunk_state)):
            ids = lists[:, start:start + settings.chunk_size]
            chunk = _chunk_alpha(ids, pix, means2D, conics, opacities, settings)
            contrib, _ = _contributing(chunk, T_start, done_start, settings)
            gid = chunk["gid"]
            listed = chunk["listed"]

            alpha = torch.where(contrib, chunk["alpha"], torch.zeros_like(chunk["alpha"]))
            one_minus = 1.0 - alpha
            T_before = T_start.unsqueeze(-1) * _exclusive_cumprod(one_minus)
            weight = T_before * alpha
            c = colors[gid].unsqueeze(1)  # (tiles, 1, c, C)
            weighted = weight.unsqueeze(-1) * c  # (tiles, P, c, C)
            suffix = torch.flip(torch.cumsum(torch.flip(weighted, dims=[2]), dim=2), dims=[2])
            S = behind.unsqueeze(2) + suffix - weighted

            gp = g.unsqueeze(2)
            dL_dcolor = (weight.unsqueeze(-1) * gp).sum(dim=1)
            dL_dalpha = (gp * (T_before.unsqueeze(-1) * c - (S + background_term) / one_minus.unsqueeze(-1))).sum(dim=-1)
            dL_dalpha = torch.where(contrib & ~chunk["clamped"], dL_dalpha, torch.zeros_like(dL_dalpha))

            dL_dopacity = (chunk["G"] * dL_dalpha).sum(dim=1)
            # d alpha / d power = alpha when unclamped
            dL_dpower = alpha * dL_dalpha
            dx, dy = chunk["dx"], chunk["dy"]
            dL_dconic = torch.stack([
                (-0.5 * dx * dx * dL_dpower).sum(dim=1),
                (-dx * dy * dL_dpower).sum(dim=1),
                (-0.5 * dy * dy * dL_dpower).sum(dim=1),
            ], dim=-1)
            dL_dmean = torch.stack([
                ((chunk["ca"] * dx + chunk["cb"] * dy) * dL_dpower).sum(dim=1),
                ((chunk["cb"] * dx + chunk["cc"] * dy) * dL_dpower).sum(dim=1),
            ], dim=-1)

            target = gid[listed]
            grad_colors.index_add_(0, target, dL_dcolor[listed])
            grad_opacities.index_add_(0, target, dL_dopacity[listed])
            grad_conics.index_add_(0, target, dL_dconic[listed])
            grad_means2D.index_add_(0, target, dL_dmean[listed])

            behind = behind + weighted.sum(dim=2)

        return grad_means2D, grad_conics, grad_colors, grad_opacities, grad_background, None, None, None

def composite_gaussians(means2D, conics, colors, opacities, background, radii, depths, raster_settings):
    return _RasterizeGaussians.apply(
        means2D,
        conics,
        colors,
        opacities,
        background,
        radii,
        depths,
        raster_settings,
    )
