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
import torch

N_MAX = 51

def build_binoms(n_max=N_MAX):
    binoms = torch.zeros((n_max, n_max), dtype=torch.float64)
    for n in range(n_max):
        for k in range(n + 1):
            binoms[n, k] = math.comb(n, k)
    return binoms

BINOMS = build_binoms()

def compute_relocation(opacity_old, scale_old, N):
    """
    Opacity and scale for a splat that is shared between N copies, chosen so the
    copies stacked on top of each other render like the original splat.

    :param opacity_old: (P,) activated opacities of the source splats.
    :param scale_old: (P, 3) activated scales of the source splats.
    :param N: (P,) integer number of copies each source ends up with (itself included).
    :return: (new_opacity (P,), new_scale (P, 3))
    """
    N = N.long().clamp(1, N_MAX)
    o = opacity_old.double()
    new_opacity = 1.0 - torch.pow(1.0 - o, 1.0 / N.double())

    # denominator: sum_{i=1..N} sum_{k=0..i-1} C(i-1, k) (-1)^k o'^(k+1) / sqrt(k+1)
    denom = torch.zeros_like(new_opacity)
    n_top = int(N.max().item()) if N.numel() > 0 else 0
    for i in range(1, n_top + 1):
        active = (N >= i).double()
        for k in range(i):
            coeff = BINOMS[i - 1, k].item() * ((-1.0) ** k) / math.sqrt(k + 1)
            denom = denom + active * coeff * torch.pow(new_opacity, k + 1)

    coeff = torch.where(denom > 0, o / denom.clamp_min(1e-30), torch.ones_like(o))
    new_scale = coeff.unsqueeze(-1) * scale_old.double()
    return new_opacity.to(opacity_old.dtype), new_scale.to(scale_old.dtype)
