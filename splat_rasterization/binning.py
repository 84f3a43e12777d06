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
import torch

class TileBins(NamedTuple):
    gaussian_ids : torch.Tensor  # (M,) splat index of every (tile, splat) pair, sorted
    tile_ids : torch.Tensor      # (M,) tile index of every pair, ascending
    tile_ranges : torch.Tensor   # (num_tiles, 2) [start, end) into the pair arrays
    grid_x : int
    grid_y : int

def tile_grid(image_width, image_height, tile_size):
    return (image_width + tile_size - 1) // tile_size, (image_height + tile_size - 1) // tile_size

def get_rect(means2D, radii, grid_x, grid_y, tile_size):
    """
    Tile rectangle [rect_min, rect_max) covered by the 3-sigma disc of every splat.
    """
    r = radii.to(means2D.dtype).unsqueeze(-1)
    lo = torch.floor((means2D - r) / tile_size)
    hi = torch.floor((means2D + r) / tile_size) + 1
    upper = torch.tensor([grid_x, grid_y], dtype=means2D.dtype, device=means2D.device)
    rect_min = torch.minimum(torch.clamp_min(lo, 0), upper).long()
    rect_max = torch.minimum(torch.clamp_min(hi, 0), upper).long()
    return rect_min, rect_max

def bin_gaussians(means2D, radii, depths, image_width, image_height, tile_size):
    """
    Duplicate every visible splat once per tile it overlaps and order the pairs by
    (tile, depth, splat index). The index tie-break comes from the stable sorts, so
    the order is deterministic for equal depths.
    """
    device = means2D.device
    grid_x, grid_y = tile_grid(image_width, image_height, tile_size)
    num_tiles = grid_x * grid_y

    rect_min, rect_max = get_rect(means2D.detach(), radii, grid_x, grid_y, tile_size)
    extent = (rect_max - rect_min).clamp_min(0)
    counts = extent[:, 0] * extent[:, 1]
    counts = torch.where(radii > 0, counts, torch.zeros_like(counts))

    total = int(counts.sum().item())
    if total == 0:
        empty = torch.zeros(0, dtype=torch.long, device=device)
        ranges = torch.zeros((num_tiles, 2), dtype=torch.long, device=device)
        return TileBins(empty, empty, ranges, grid_x, grid_y)

    gaussian_ids = torch.repeat_interleave(torch.arange(counts.shape[0], device=device), counts)
    offsets = torch.cumsum(counts, dim=0) - counts
    local = torch.arange(total, device=device) - offsets[gaussian_ids]
    width = extent[gaussian_ids, 0]
    tx = rect_min[gaussian_ids, 0] + local % width
    ty = rect_min[gaussian_ids, 1] + torch.div(local, width, rounding_mode="floor")
    tile_ids = ty * grid_x + tx

    order = torch.sort(depths.detach()[gaussian_ids], stable=True).indices
    gaussian_ids, tile_ids = gaussian_ids[order], tile_ids[order]
    order = torch.sort(tile_ids, stable=True).indices
    gaussian_ids, tile_ids = gaussian_ids[order], tile_ids[order]

    tiles = torch.arange(num_tiles, device=device)
    starts = torch.searchsorted(tile_ids, tiles)
    ends = torch.searchsorted(tile_ids, tiles, right=True)
    return TileBins(gaussian_ids, tile_ids, torch.stack([starts, ends], dim=-1), grid_x, grid_y)
