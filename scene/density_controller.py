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

from typing import NamedTuple, Optional
import torch
from utils.general_utils import build_rotation
from utils.reloc_utils import compute_relocation

class DensificationReport(NamedTuple):
    iteration : int
    strategy : str
    before : int
    after : int
    pruned : int = 0
    cloned : int = 0
    split : int = 0          # parents removed by splitting
    split_created : int = 0  # children appended by splitting
    relocated : int = 0
    added : int = 0

    def __str__(self):
        return "[ITER {}] {}: {} -> {} splats (pruned {}, cloned {}, split {} -> {}, relocated {}, added {})".format(
            self.iteration, self.strategy, self.before, self.after, self.pruned, self.cloned,
            self.split, self.split_created, self.relocated, self.added)

def op_sigmoid(x, k=100, x0=0.995):
    return 1 / (1 + torch.exp(-k * (x - x0)))

def opacity_score(gaussians, indices, opt):
    return gaussians.get_opacity[indices, 0]

def opacity_grad_score(gaussians, indices, opt):
    """Blend of normalized opacity and normalized mean view space gradient."""
    grads = gaussians.xyz_gradient_accum[indices, 0] / gaussians.denom[indices, 0].clamp_min(1)
    grads = grads / (grads.max() + 1e-8) if grads.numel() > 0 else grads
    opacities = gaussians.get_opacity[indices, 0]
    opacities = opacities / (opacities.max() + 1e-8) if opacities.numel() > 0 else opacities
    score = opt.relocation_lambda_grad * grads + opt.relocation_lambda_opacity * opacities
    return score.clamp_min(1e-8)

RELOCATION_SCORES = {
    "opacity": opacity_score,
    "opacity_grad": opacity_grad_score,
}

class DensityController:
    """
    Grows, shrinks and moves splats between optimizer steps.

    Two strategies share the statistics kept by the store:
    "adc" clones, splits and prunes from accumulated view space gradients and resets
    opacity periodically; "mcmc" keeps N nearly fixed, moves dead splats onto live
    ones, grows by 5% per cycle up to cap_max and perturbs positions every step.
    """

    def __init__(self, opt, gaussians, scene_extent, white_background=False, score_fn=None):
        if opt.strategy not in ("adc", "mcmc"):
            raise ValueError("Unknown density control strategy: {}".format(opt.strategy))
        self.opt = opt
        self.gaussians = gaussians
        self.scene_extent = scene_extent
        self.white_background = white_background
        if score_fn is None:
            if opt.relocation_score not in RELOCATION_SCORES:
                raise ValueError("Unknown relocation score: {}".format(opt.relocation_score))
            score_fn = RELOCATION_SCORES[opt.relocation_score]
        self.score_fn = score_fn

    @property
    def strategy(self):
        return self.opt.strategy

    def in_densify_window(self, iteration):
        return self.opt.densify_from_iter < iteration < self.opt.densify_until_iter

    def should_run(self, iteration):
        return self.in_densify_window(iteration) and iteration % self.opt.densification_interval == 0

    def should_reset_opacity(self, iteration):
        if self.strategy != "adc" or iteration >= self.opt.densify_until_iter:
            return False
        return iteration % self.opt.opacity_reset_interval == 0 or (self.white_background and iteration == self.opt.densify_from_iter)

    @torch.no_grad()
    def update_stats(self, render_pkg, iteration):
        """Fold one render (after backward) into the per splat statistics."""
        if iteration >= self.opt.densify_until_iter:
            return
        visibility_filter = render_pkg["visibility_filter"]
        self.gaussians.add_visibility_stats(render_pkg["radii"], render_pkg["max_weight"], render_pkg["visible"])
        if render_pkg["viewspace_points"].grad is not None:
            height, width = render_pkg["render"].shape[-2:]
            self.gaussians.add_densification_stats(render_pkg["viewspace_points"], visibility_filter, width, height)

    def regularization_loss(self):
        """Opacity and scale penalties used by the relocation strategy; zero for adc."""
        if self.strategy != "mcmc":
            return 0.0
        return self.opt.opacity_reg * torch.abs(self.gaussians.get_opacity).mean() + \
            self.opt.scale_reg * torch.abs(self.gaussians.get_scaling).mean()

    @torch.no_grad()
    def inject_noise(self, xyz_lr):
        """Covariance shaped position noise, strongest on nearly transparent splats."""
        if self.strategy != "mcmc":
            return
        gaussians = self.gaussians
        covariance = gaussians.get_covariance()
        noise = torch.randn_like(gaussians._xyz) * op_sigmoid(1 - gaussians.get_opacity) * self.opt.noise_lr * xyz_lr
        noise = torch.bmm(covariance, noise.unsqueeze(-1)).squeeze(-1)
        gaussians._xyz.add_(noise)

    def reset_opacity(self):
        self.gaussians.reset_opacity()

    def step(self, iteration) -> Optional[DensificationReport]:
        gaussians = self.gaussians
        gaussians.advance_staleness()
        if self.strategy == "adc":
            report = self.densify_and_prune(iteration)
        else:
            report = self.relocate_and_add(iteration)
        gaussians.reset_cycle_stats()
        gaussians.check_invariants()
        return report

    # adaptive density control

    def densify_and_prune(self, iteration):
        opt = self.opt
        gaussians = self.gaussians
        before = gaussians.num_points

        grads = gaussians.xyz_gradient_accum / gaussians.denom
        grads[grads.isnan()] = 0.0

        cloned = self.densify_and_clone(grads, opt.densify_grad_threshold)
        split, split_created = self.densify_and_split(grads, opt.densify_grad_threshold)

        prune_mask = (gaussians.get_opacity < opt.min_opacity).squeeze(-1)
        if iteration > opt.opacity_reset_interval:
            big_points_vs = gaussians.max_radii2D > opt.max_screen_size
            big_points_ws = gaussians.get_scaling.max(dim=1).values > 0.1 * self.scene_extent
            prune_mask = torch.logical_or(torch.logical_or(prune_mask, big_points_vs), big_points_ws)
        if opt.prune_stale_cycles > 0:
            prune_mask = torch.logical_or(prune_mask, gaussians.stale_cycles >= opt.prune_stale_cycles)
        pruned = int(prune_mask.sum().item())
        gaussians.prune_points(prune_mask)

        return DensificationReport(iteration, "adc", before, gaussians.num_points, pruned=pruned,
                                   cloned=cloned, split=split, split_created=split_created)

    def densify_and_clone(self, grads, grad_threshold):
        """Copy small splats with large view space gradient in place."""
        gaussians = self.gaussians
        selected_pts_mask = torch.where(torch.norm(grads, dim=-1) >= grad_threshold, True, False)
        selected_pts_mask = torch.logical_and(selected_pts_mask,
                                              torch.max(gaussians.get_scaling, dim=1).values <= gaussians.percent_dense*self.scene_extent)

        new_xyz = gaussians._xyz[selected_pts_mask]
        new_features_dc = gaussians._features_dc[selected_pts_mask]
        new_features_rest = gaussians._features_rest[selected_pts_mask]
        new_opacities = gaussians._opacity[selected_pts_mask]
        new_scaling = gaussians._scaling[selected_pts_mask]
        new_rotation = gaussians._rotation[selected_pts_mask]

        gaussians.densification_postfix(new_xyz, new_features_dc, new_features_rest, new_opacities, new_scaling, new_rotation)
        return int(selected_pts_mask.sum().item())

    def densify_and_split(self, grads, grad_threshold, N=2):
        """
        Replace large splats with large view space gradient by N children drawn from the
        parent Gaussian, each shrunk by 0.8 * N.
        """
        gaussians = self.gaussians
        n_init_points = gaussians.num_points
        # Extract points that satisfy the gradient condition
        padded_grad = torch.zeros((n_init_points), dtype=grads.dtype, device=grads.device)
        padded_grad[:grads.shape[0]] = grads.squeeze(-1)
        selected_pts_mask = torch.where(padded_grad >= grad_threshold, True, False)
        selected_pts_mask = torch.logical_and(selected_pts_mask,
                                              torch.max(gaussians.get_scaling, dim=1).values > gaussians.percent_dense*self.scene_extent)

        stds = gaussians.get_scaling[selected_pts_mask].repeat(N,1)
        means = torch.zeros((stds.size(0), 3), dtype=stds.dtype, device=stds.device)
        samples = torch.normal(mean=means, std=stds)
        rots = build_rotation(gaussians._rotation[selected_pts_mask]).repeat(N,1,1)
        new_xyz = torch.bmm(rots, samples.unsqueeze(-1)).squeeze(-1) + gaussians.get_xyz[selected_pts_mask].repeat(N, 1)
        new_scaling = gaussians.scaling_inverse_activation(gaussians.get_scaling[selected_pts_mask].repeat(N,1) / (0.8*N))
        new_rotation = gaussians._rotation[selected_pts_mask].repeat(N,1)
        new_features_dc = gaussians._features_dc[selected_pts_mask].repeat(N,1,1)
        new_features_rest = gaussians._features_rest[selected_pts_mask].repeat(N,1,1)
        new_opacity = gaussians._opacity[selected_pts_mask].repeat(N,1)

        gaussians.densification_postfix(new_xyz.detach(), new_features_dc.detach(), new_features_rest.detach(),
                                        new_opacity.detach(), new_scaling.detach(), new_rotation.detach())

        n_selected = int(selected_pts_mask.sum().item())
        prune_filter = torch.cat((selected_pts_mask, torch.zeros(N * n_selected, device=selected_pts_mask.device, dtype=bool)))
        gaussians.prune_points(prune_filter)
        return n_selected, N * n_selected

    # stochastic relocation

    def _sample_alives(self, probs, num, alive_indices=None):
        if probs.sum() <= 0:
            probs = torch.ones_like(probs)
        probs = probs / probs.sum()
        sampled_idxs = torch.multinomial(probs, num, replacement=True)
        if alive_indices is not None:
            sampled_idxs = alive_indices[sampled_idxs]
        ratio = torch.bincount(sampled_idxs, minlength=self.gaussians.num_points)[sampled_idxs] + 1
        return sampled_idxs, ratio

    def _update_params(self, idxs, ratio):
        gaussians = self.gaussians
        new_opacity, new_scaling = compute_relocation(
            opacity_old=gaussians.get_opacity[idxs, 0],
            scale_old=gaussians.get_scaling[idxs],
            N=ratio,
        )
        eps = torch.finfo(new_opacity.dtype).eps
        new_opacity = torch.clamp(new_opacity.unsqueeze(-1), max=1.0 - eps, min=self.opt.min_opacity)
        new_opacity = gaussians.inverse_opacity_activation(new_opacity)
        new_scaling = gaussians.scaling_inverse_activation(new_scaling.reshape(-1, 3))

        return (
            gaussians._xyz[idxs],
            gaussians._features_dc[idxs],
            gaussians._features_rest[idxs],
            new_opacity,
            new_scaling,
            gaussians._rotation[idxs],
        )

    def _jitter(self, xyz, log_scaling):
        if self.opt.relocation_noise <= 0:
            return xyz
        return xyz + torch.randn_like(xyz) * torch.exp(log_scaling) * self.opt.relocation_noise

    @torch.no_grad()
    def relocate_gs(self, dead_mask):
        """
        Move every dead splat onto a live one sampled from the relocation score. Source
        and copies share the rescaled opacity and scale. Returns the number moved.
        """
        gaussians = self.gaussians
        if dead_mask.sum() == 0:
            return 0

        alive_mask = ~dead_mask
        dead_indices = dead_mask.nonzero(as_tuple=True)[0]
        alive_indices = alive_mask.nonzero(as_tuple=True)[0]

        if alive_indices.shape[0] <= 0:
            return 0

        probs = self.score_fn(gaussians, alive_indices, self.opt)
        reinit_idx, ratio = self._sample_alives(alive_indices=alive_indices, probs=probs, num=dead_indices.shape[0])

        new_xyz, new_features_dc, new_features_rest, new_opacity, new_scaling, new_rotation = self._update_params(reinit_idx, ratio=ratio)
        gaussians._xyz[dead_indices] = self._jitter(new_xyz, new_scaling)
        gaussians._features_dc[dead_indices] = new_features_dc
        gaussians._features_rest[dead_indices] = new_features_rest
        gaussians._opacity[dead_indices] = new_opacity
        gaussians._scaling[dead_indices] = new_scaling
        gaussians._rotation[dead_indices] = new_rotation

        gaussians._opacity[reinit_idx] = new_opacity
        gaussians._scaling[reinit_idx] = new_scaling
        gaussians.stale_cycles[dead_indices] = 0

        gaussians.replace_tensors_to_optimizer(inds=torch.cat((reinit_idx, dead_indices)))
        return int(dead_indices.shape[0])

    @torch.no_grad()
    def add_new_gs(self, cap_max):
        """Grow by 5% (at most up to cap_max), sampling sources from the relocation score."""
        gaussians = self.gaussians
        current_num_points = gaussians.num_points
        target_num = min(cap_max, int(1.05 * current_num_points))
        num_gs = max(0, target_num - current_num_points)

        if num_gs <= 0:
            return 0

        all_indices = torch.arange(current_num_points, device=gaussians.get_xyz.device)
        probs = self.score_fn(gaussians, all_indices, self.opt)
        add_idx, ratio = self._sample_alives(probs=probs, num=num_gs)

        new_xyz, new_features_dc, new_features_rest, new_opacity, new_scaling, new_rotation = self._update_params(add_idx, ratio=ratio)

        gaussians._opacity[add_idx] = new_opacity
        gaussians._scaling[add_idx] = new_scaling

        gaussians.densification_postfix(self._jitter(new_xyz, new_scaling), new_features_dc, new_features_rest,
                                        new_opacity, new_scaling, new_rotation)
        gaussians.replace_tensors_to_optimizer(inds=add_idx)

        return num_gs

    def relocate_and_add(self, iteration):
        gaussians = self.gaussians
        before = gaussians.num_points
        dead_mask = (gaussians.get_opacity <= self.opt.min_opacity).squeeze(-1)
        relocated = self.relocate_gs(dead_mask=dead_mask)
        added = self.add_new_gs(cap_max=self.opt.cap_max)
        return DensificationReport(iteration, "mcmc", before, gaussians.num_points, relocated=relocated, added=added)
