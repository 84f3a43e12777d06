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
import numpy as np
from utils.general_utils import inverse_sigmoid, get_expon_lr_func, build_covariance
from torch import nn
import os
from utils.system_utils import mkdir_p
from plyfile import PlyData, PlyElement
from utils.sh_utils import RGB2SH
from utils.graphics_utils import BasicPointCloud
from utils.errors import SplatStoreInvariantError

def distKNN2(points, k=3, chunk_size=4096):
    """
    Mean squared distance of every point to its k nearest neighbours.
    """
    num_points = points.shape[0]
    k = min(k, num_points - 1)
    if k <= 0:
        return torch.ones(num_points, dtype=points.dtype, device=points.device)
    out = torch.empty(num_points, dtype=points.dtype, device=points.device)
    for start in range(0, num_points, chunk_size):
        block = points[start:start + chunk_size]
        d2 = torch.cdist(block, points).pow(2)
        rows = torch.arange(block.shape[0], device=points.device)
        d2[rows, rows + start] = float("inf")
        out[start:start + block.shape[0]] = d2.topk(k, dim=1, largest=False).values.mean(dim=1)
    return out

class GaussianModel:

    def setup_functions(self):
        self.scaling_activation = torch.exp
        self.scaling_inverse_activation = torch.log

        self.covariance_activation = build_covariance

        self.opacity_activation = torch.sigmoid
        self.inverse_opacity_activation = inverse_sigmoid

        self.rotation_activation = torch.nn.functional.normalize

    def __init__(self, sh_degree : int, device="cuda", dtype=torch.float32):
        self.active_sh_degree = 0
        self.max_sh_degree = sh_degree
        try:
            self.device = torch.device(device)
        except Exception as e:
            print(e)
            print(f"[Warning] Custom device {device} failed, fallback to default cpu device" )
            self.device = torch.device("cpu")
        self.dtype = dtype

        self._xyz = torch.empty(0)
        self._features_dc = torch.empty(0)
        self._features_rest = torch.empty(0)
        self._scaling = torch.empty(0)
        self._rotation = torch.empty(0)
        self._opacity = torch.empty(0)
        self.max_radii2D = torch.empty(0)
        self.xyz_gradient_accum = torch.empty(0)
        self.denom = torch.empty(0)
        self.max_weight = torch.empty(0)
        self.visibility_count = torch.empty(0)
        self.stale_cycles = torch.empty(0)
        self.optimizer = None
        self.percent_dense = 0
        self.spatial_lr_scale = 0
        self.min_scale = 1e-7
        self.xyz_scheduler_args = None
        self.scaling_scheduler_args = None
        self.setup_functions()

    def capture(self):
        return (
            self.active_sh_degree,
            self._xyz,
            self._features_dc,
            self._features_rest,
            self._scaling,
            self._rotation,
            self._opacity,
            self.max_radii2D,
            self.xyz_gradient_accum,
            self.denom,
            self.max_weight,
            self.visibility_count,
            self.stale_cycles,
            self.optimizer.state_dict(),
            self.spatial_lr_scale,
        )

    def restore(self, model_args, training_args):
        (self.active_sh_degree,
        self._xyz,
        self._features_dc,
        self._features_rest,
        self._scaling,
        self._rotation,
        self._opacity,
        max_radii2D,
        xyz_gradient_accum,
        denom,
        max_weight,
        visibility_count,
        stale_cycles,
        opt_dict,
        self.spatial_lr_scale) = model_args
        self.training_setup(training_args)
        self.max_radii2D = max_radii2D
        self.xyz_gradient_accum = xyz_gradient_accum
        self.denom = denom
        self.max_weight = max_weight
        self.visibility_count = visibility_count
        self.stale_cycles = stale_cycles
        self.optimizer.load_state_dict(opt_dict)
        self.check_invariants()

    @property
    def get_scaling(self):
        return self.scaling_activation(self._scaling)

    @property
    def get_rotation(self):
        return self.rotation_activation(self._rotation)

    @property
    def get_xyz(self):
        return self._xyz

    @property
    def get_features(self):
        features_dc = self._features_dc
        features_rest = self._features_rest
        return torch.cat((features_dc, features_rest), dim=1)

    @property
    def get_opacity(self):
        return self.opacity_activation(self._opacity)

    @property
    def num_points(self):
        return self._xyz.shape[0]

    def get_covariance(self, scaling_modifier = 1):
        """(N, 3, 3) world space covariance, symmetric positive definite."""
        return self.covariance_activation(self.get_scaling * scaling_modifier, self._rotation, self.min_scale)

    def oneupSHdegree(self):
        if self.active_sh_degree < self.max_sh_degree:
            self.active_sh_degree += 1

    def create_from_pcd(self, pcd : BasicPointCloud, spatial_lr_scale : float, init_opacity : float = 0.1):
        """
        Seed one splat per point: isotropic scale from the mean distance to the three
        nearest neighbours, identity rotation, DC color from the point color.
        """
        self.spatial_lr_scale = spatial_lr_scale
        fused_point_cloud = torch.tensor(np.asarray(pcd.points), dtype=self.dtype, device=self.device)
        fused_color = RGB2SH(torch.tensor(np.asarray(pcd.colors), dtype=self.dtype, device=self.device))
        features = torch.zeros((fused_color.shape[0], 3, (self.max_sh_degree + 1) ** 2), dtype=self.dtype, device=self.device)
        features[:, :3, 0 ] = fused_color
        features[:, 3:, 1:] = 0.0

        print("Number of points at initialisation : ", fused_point_cloud.shape[0])

        dist2 = torch.clamp_min(distKNN2(fused_point_cloud), 0.0000001)
        scales = torch.log(torch.sqrt(dist2))[...,None].repeat(1, 3)
        rots = torch.zeros((fused_point_cloud.shape[0], 4), dtype=self.dtype, device=self.device)
        rots[:, 0] = 1

        opacities = inverse_sigmoid(init_opacity * torch.ones((fused_point_cloud.shape[0], 1), dtype=self.dtype, device=self.device))

        self._xyz = nn.Parameter(fused_point_cloud.requires_grad_(True))
        self._features_dc = nn.Parameter(features[:,:,0:1].transpose(1, 2).contiguous().requires_grad_(True))
        self._features_rest = nn.Parameter(features[:,:,1:].transpose(1, 2).contiguous().requires_grad_(True))
        self._scaling = nn.Parameter(scales.requires_grad_(True))
        self._rotation = nn.Parameter(rots.requires_grad_(True))
        self._opacity = nn.Parameter(opacities.requires_grad_(True))
        self.reset_stats()

    def create_random(self, count : int, extent : float, spatial_lr_scale : float, init_opacity : float = 0.1):
        """Uniform points in the cube [-extent, extent]^3 with random colors."""
        xyz = (np.random.random((count, 3)) * 2.0 - 1.0) * extent
        rgb = np.random.random((count, 3))
        pcd = BasicPointCloud(points=xyz, colors=rgb, normals=np.zeros((count, 3)))
        self.create_from_pcd(pcd, spatial_lr_scale, init_opacity)

    def reset_stats(self):
        """Zero every per-splat statistic, sized to the current store."""
        n = self.get_xyz.shape[0]
        self.xyz_gradient_accum = torch.zeros((n, 1), dtype=self.dtype, device=self.device)
        self.denom = torch.zeros((n, 1), dtype=self.dtype, device=self.device)
        self.max_radii2D = torch.zeros((n), dtype=self.dtype, device=self.device)
        self.max_weight = torch.zeros((n), dtype=self.dtype, device=self.device)
        self.visibility_count = torch.zeros((n), dtype=torch.int32, device=self.device)
        self.stale_cycles = torch.zeros((n), dtype=torch.int32, device=self.device)

    def training_setup(self, training_args):
        self.percent_dense = training_args.percent_dense
        self.xyz_gradient_accum = torch.zeros((self.get_xyz.shape[0], 1), dtype=self.dtype, device=self.device)
        self.denom = torch.zeros((self.get_xyz.shape[0], 1), dtype=self.dtype, device=self.device)
        if self.max_weight.shape[0] != self.get_xyz.shape[0]:
            self.reset_stats()

        l = [
            {'params': [self._xyz], 'lr': training_args.position_lr_init * self.spatial_lr_scale, "name": "xyz"},
            {'params': [self._features_dc], 'lr': training_args.feature_lr, "name": "f_dc"},
            {'params': [self._features_rest], 'lr': training_args.feature_lr / 20.0, "name": "f_rest"},
            {'params': [self._opacity], 'lr': training_args.opacity_lr, "name": "opacity"},
            {'params': [self._scaling], 'lr': training_args.scaling_lr, "name": "scaling"},
            {'params': [self._rotation], 'lr': training_args.rotation_lr, "name": "rotation"}
        ]

        self.optimizer = torch.optim.Adam(l, lr=0.0, eps=1e-15)
        self.xyz_scheduler_args = get_expon_lr_func(lr_init=training_args.position_lr_init*self.spatial_lr_scale,
                                                    lr_final=training_args.position_lr_final*self.spatial_lr_scale,
                                                    lr_delay_mult=training_args.position_lr_delay_mult,
                                                    max_steps=training_args.position_lr_max_steps)
        self.scaling_scheduler_args = None
        if training_args.scaling_lr_final > 0:
            self.scaling_scheduler_args = get_expon_lr_func(lr_init=training_args.scaling_lr,
                                                            lr_final=training_args.scaling_lr_final,
                                                            max_steps=training_args.iterations)

    def update_learning_rate(self, iteration):
        ''' Learning rate scheduling per step '''
        xyz_lr = None
        for param_group in self.optimizer.param_groups:
            if param_group["name"] == "xyz":
                xyz_lr = self.xyz_scheduler_args(iteration)
                param_group['lr'] = xyz_lr
            elif param_group["name"] == "scaling" and self.scaling_scheduler_args is not None:
                param_group['lr'] = self.scaling_scheduler_args(iteration)
        return xyz_lr

    def check_invariants(self):
        """
        Every parallel per-splat array and every optimizer moment buffer must share
        the leading length N.
        """
        n = self._xyz.shape[0]
        arrays = {
            "f_dc": self._features_dc, "f_rest": self._features_rest, "opacity": self._opacity,
            "scaling": self._scaling, "rotation": self._rotation, "max_radii2D": self.max_radii2D,
            "xyz_gradient_accum": self.xyz_gradient_accum, "denom": self.denom,
            "max_weight": self.max_weight, "visibility_count": self.visibility_count,
            "stale_cycles": self.stale_cycles,
        }
        for name, tensor in arrays.items():
            if tensor.shape[0] != n:
                raise SplatStoreInvariantError("{} has {} rows, expected {}".format(name, tensor.shape[0], n))
        if self.optimizer is None:
            return
        for group in self.optimizer.param_groups:
            param = group["params"][0]
            if param.shape[0] != n:
                raise SplatStoreInvariantError("optimizer group {} has {} rows, expected {}".format(group["name"], param.shape[0], n))
            stored_state = self.optimizer.state.get(param, None)
            if stored_state is None:
                continue
            for key in ("exp_avg", "exp_avg_sq"):
                if key in stored_state and stored_state[key].shape[0] != n:
                    raise SplatStoreInvariantError("{} of group {} has {} rows, expected {}".format(
                        key, group["name"], stored_state[key].shape[0], n))

    def construct_list_of_attributes(self):
        l = ['x', 'y', 'z', 'nx', 'ny', 'nz']
        # All channels except the 3 DC
        for i in range(self._features_dc.shape[1]*self._features_dc.shape[2]):
            l.append('f_dc_{}'.format(i))
        for i in range(self._features_rest.shape[1]*self._features_rest.shape[2]):
            l.append('f_rest_{}'.format(i))
        l.append('opacity')
        for i in range(self._scaling.shape[1]):
            l.append('scale_{}'.format(i))
        for i in range(self._rotation.shape[1]):
            l.append('rot_{}'.format(i))
        return l

    def save_ply(self, path):
        mkdir_p(os.path.dirname(path))

        xyz = self._xyz.detach().cpu().numpy()
        normals = np.zeros_like(xyz)
        f_dc = self._features_dc.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        f_rest = self._features_rest.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        opacities = self._opacity.detach().cpu().numpy()
        scale = self._scaling.detach().cpu().numpy()
        rotation = self._rotation.detach().cpu().numpy()

        dtype_full = [(attribute, 'f4') for attribute in self.construct_list_of_attributes()]

        elements = np.empty(xyz.shape[0], dtype=dtype_full)
        attributes = np.concatenate((xyz, normals, f_dc, f_rest, opacities, scale, rotation), axis=1)
        elements[:] = list(map(tuple, attributes))
        el = PlyElement.describe(elements, 'vertex')
        PlyData([el]).write(path)

    def load_ply(self, path):
        plydata = PlyData.read(path)

        xyz = np.stack((np.asarray(plydata.elements[0]["x"]),
                        np.asarray(plydata.elements[0]["y"]),
                        np.asarray(plydata.elements[0]["z"])),  axis=1)
        opacities = np.asarray(plydata.elements[0]["opacity"])[..., np.newaxis]

        features_dc = np.zeros((xyz.shape[0], 3, 1))
        features_dc[:, 0, 0] = np.asarray(plydata.elements[0]["f_dc_0"])
        features_dc[:, 1, 0] = np.asarray(plydata.elements[0]["f_dc_1"])
        features_dc[:, 2, 0] = np.asarray(plydata.elements[0]["f_dc_2"])

        extra_f_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("f_rest_")]
        extra_f_names = sorted(extra_f_names, key = lambda x: int(x.split('_')[-1]))
        assert len(extra_f_names)==3*(self.max_sh_degree + 1) ** 2 - 3
        features_extra = np.zeros((xyz.shape[0], len(extra_f_names)))
        for idx, attr_name in enumerate(extra_f_names):
            features_extra[:, idx] = np.asarray(plydata.elements[0][attr_name])
        # Reshape (P,F*SH_coeffs) to (P, F, SH_coeffs except DC)
        features_extra = features_extra.reshape((features_extra.shape[0], 3, (self.max_sh_degree + 1) ** 2 - 1))

        scale_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("scale_")]
        scale_names = sorted(scale_names, key = lambda x: int(x.split('_')[-1]))
        scales = np.zeros((xyz.shape[0], len(scale_names)))
        for idx, attr_name in enumerate(scale_names):
            scales[:, idx] = np.asarray(plydata.elements[0][attr_name])

        rot_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("rot")]
        rot_names = sorted(rot_names, key = lambda x: int(x.split('_')[-1]))
        rots = np.zeros((xyz.shape[0], len(rot_names)))
        for idx, attr_name in enumerate(rot_names):
            rots[:, idx] = np.asarray(plydata.elements[0][attr_name])

        def to_param(array):
            return nn.Parameter(torch.tensor(array, dtype=self.dtype, device=self.device).requires_grad_(True))

        self._xyz = to_param(xyz)
        self._features_dc = nn.Parameter(torch.tensor(features_dc, dtype=self.dtype, device=self.device).transpose(1, 2).contiguous().requires_grad_(True))
        self._features_rest = nn.Parameter(torch.tensor(features_extra, dtype=self.dtype, device=self.device).transpose(1, 2).contiguous().requires_grad_(True))
        self._opacity = to_param(opacities)
        self._scaling = to_param(scales)
        self._rotation = to_param(rots)
        self.reset_stats()

        self.active_sh_degree = self.max_sh_degree

    def reset_opacity(self):
        opacities_new = inverse_sigmoid(torch.min(self.get_opacity, torch.ones_like(self.get_opacity)*0.01))
        optimizable_tensors = self.replace_tensor_to_optimizer(opacities_new, "opacity")
        self._opacity = optimizable_tensors["opacity"]

    def replace_tensor_to_optimizer(self, tensor, name):
        optimizable_tensors = {}
        for group in self.optimizer.param_groups:
            if group["name"] == name:
                stored_state = self.optimizer.state.pop(group["params"][0], None)
                group["params"][0] = nn.Parameter(tensor.requires_grad_(True))
                if stored_state is not None:
                    stored_state["exp_avg"] = torch.zeros_like(tensor)
                    stored_state["exp_avg_sq"] = torch.zeros_like(tensor)
                    self.optimizer.state[group['params'][0]] = stored_state

                optimizable_tensors[group["name"]] = group["params"][0]
        return optimizable_tensors

    def _param_tensors(self):
        return {"xyz": self._xyz,
                "f_dc": self._features_dc,
                "f_rest": self._features_rest,
                "opacity": self._opacity,
                "scaling" : self._scaling,
                "rotation" : self._rotation}

    def _set_param_tensors(self, optimizable_tensors):
        self._xyz = optimizable_tensors["xyz"]
        self._features_dc = optimizable_tensors["f_dc"]
        self._features_rest = optimizable_tensors["f_rest"]
        self._opacity = optimizable_tensors["opacity"]
        self._scaling = optimizable_tensors["scaling"]
        self._rotation = optimizable_tensors["rotation"]

    def replace_tensors_to_optimizer(self, inds=None):
        """
        Re-register the current parameter tensors (after in-place row edits) and zero
        the Adam moments of rows `inds`, or of every row when inds is None.
        """
        tensors_dict = self._param_tensors()
        optimizable_tensors = {}
        for group in self.optimizer.param_groups:
            assert len(group["params"]) == 1
            tensor = tensors_dict[group["name"]]
            stored_state = self.optimizer.state.get(group['params'][0], None)
            if stored_state is not None:
                if inds is not None:
                    stored_state["exp_avg"][inds] = 0
                    stored_state["exp_avg_sq"][inds] = 0
                else:
                    stored_state["exp_avg"] = torch.zeros_like(tensor)
                    stored_state["exp_avg_sq"] = torch.zeros_like(tensor)
                del self.optimizer.state[group['params'][0]]

            group["params"][0] = nn.Parameter(tensor.detach().requires_grad_(True))
            if stored_state is not None:
                self.optimizer.state[group['params'][0]] = stored_state
            optimizable_tensors[group["name"]] = group["params"][0]

        self._set_param_tensors(optimizable_tensors)
        return optimizable_tensors

    def _prune_optimizer(self, mask):
        optimizable_tensors = {}
        for group in self.optimizer.param_groups:
            stored_state = self.optimizer.state.get(group['params'][0], None)
            if stored_state is not None:
                stored_state["exp_avg"] = stored_state["exp_avg"][mask]
                stored_state["exp_avg_sq"] = stored_state["exp_avg_sq"][mask]

                del self.optimizer.state[group['params'][0]]
                group["params"][0] = nn.Parameter((group["params"][0][mask].requires_grad_(True)))
                self.optimizer.state[group['params'][0]] = stored_state

                optimizable_tensors[group["name"]] = group["params"][0]
            else:
                group["params"][0] = nn.Parameter(group["params"][0][mask].requires_grad_(True))
                optimizable_tensors[group["name"]] = group["params"][0]
        return optimizable_tensors

    def prune_points(self, mask):
        """Remove the splats where mask is True; the survivors keep their relative order."""
        valid_points_mask = ~mask
        optimizable_tensors = self._prune_optimizer(valid_points_mask)
        self._set_param_tensors(optimizable_tensors)

        self.xyz_gradient_accum = self.xyz_gradient_accum[valid_points_mask]
        self.denom = self.denom[valid_points_mask]
        self.max_radii2D = self.max_radii2D[valid_points_mask]
        self.max_weight = self.max_weight[valid_points_mask]
        self.visibility_count = self.visibility_count[valid_points_mask]
        self.stale_cycles = self.stale_cycles[valid_points_mask]

    def cat_tensors_to_optimizer(self, tensors_dict):
        optimizable_tensors = {}
        for group in self.optimizer.param_groups:
            assert len(group["params"]) == 1
            extension_tensor = tensors_dict[group["name"]]
            stored_state = self.optimizer.state.get(group['params'][0], None)
            if stored_state is not None:

                stored_state["exp_avg"] = torch.cat((stored_state["exp_avg"], torch.zeros_like(extension_tensor)), dim=0)
                stored_state["exp_avg_sq"] = torch.cat((stored_state["exp_avg_sq"], torch.zeros_like(extension_tensor)), dim=0)

                del self.optimizer.state[group['params'][0]]
                group["params"][0] = nn.Parameter(torch.cat((group["params"][0], extension_tensor), dim=0).requires_grad_(True))
                self.optimizer.state[group['params'][0]] = stored_state

                optimizable_tensors[group["name"]] = group["params"][0]
            else:
                group["params"][0] = nn.Parameter(torch.cat((group["params"][0], extension_tensor), dim=0).requires_grad_(True))
                optimizable_tensors[group["name"]] = group["params"][0]

        return optimizable_tensors

    def densification_postfix(self, new_xyz, new_features_dc, new_features_rest, new_opacities, new_scaling, new_rotation):
        """Append splats. Statistics of existing rows are kept, new rows start at zero."""
        d = {"xyz": new_xyz,
        "f_dc": new_features_dc,
        "f_rest": new_features_rest,
        "opacity": new_opacities,
        "scaling" : new_scaling,
        "rotation" : new_rotation}

        optimizable_tensors = self.cat_tensors_to_optimizer(d)
        self._set_param_tensors(optimizable_tensors)

        n_new = new_xyz.shape[0]
        def extend(stat, shape_tail=()):
            return torch.cat((stat, torch.zeros((n_new,) + shape_tail, dtype=stat.dtype, device=stat.device)), dim=0)
        self.xyz_gradient_accum = extend(self.xyz_gradient_accum, (1,))
        self.denom = extend(self.denom, (1,))
        self.max_radii2D = extend(self.max_radii2D)
        self.max_weight = extend(self.max_weight)
        self.visibility_count = extend(self.visibility_count)
        self.stale_cycles = extend(self.stale_cycles)

    def add_densification_stats(self, viewspace_point_tensor, update_filter, image_width, image_height):
        # pixel space gradient to NDC units, the scale densify_grad_threshold is expressed in
        grad = viewspace_point_tensor.grad[update_filter,:2]
        grad = grad * grad.new_tensor([image_width * 0.5, image_height * 0.5])
        self.xyz_gradient_accum[update_filter] += torch.norm(grad, dim=-1, keepdim=True)
        self.denom[update_filter] += 1

    def add_visibility_stats(self, radii, max_weight, visible):
        """Fold the per view radii and blend weights of one render into the running maxima."""
        visibility_filter = radii > 0
        self.max_radii2D[visibility_filter] = torch.max(self.max_radii2D[visibility_filter], radii[visibility_filter].to(self.max_radii2D.dtype))
        self.max_weight = torch.max(self.max_weight, max_weight.detach().to(self.max_weight.dtype))
        self.visibility_count += visible.to(torch.int32)

    def advance_staleness(self):
        """Count one more density cycle for every splat that no view saw since the last one."""
        seen = self.visibility_count > 0
        self.stale_cycles = torch.where(seen, torch.zeros_like(self.stale_cycles), self.stale_cycles + 1)

    def reset_cycle_stats(self):
        n = self.get_xyz.shape[0]
        self.xyz_gradient_accum = torch.zeros((n, 1), dtype=self.dtype, device=self.device)
        self.denom = torch.zeros((n, 1), dtype=self.dtype, device=self.device)
        self.max_radii2D = torch.zeros((n), dtype=self.dtype, device=self.device)
        self.max_weight = torch.zeros((n), dtype=self.dtype, device=self.device)
        self.visibility_count = torch.zeros((n), dtype=torch.int32, device=self.device)
