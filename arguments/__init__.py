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

from argparse import ArgumentParser
import os

class GroupParams:
    pass

class ParamGroup:
    def __init__(self, parser: ArgumentParser, name : str, fill_none = False):
        """
        Register every attribute set in the subclass __init__ as a command line option.
        A leading underscore on the attribute name also adds a one-letter shorthand.

        :param parser: parser the argument group is added to.
        :param name: title of the argument group.
        :param fill_none: register the options with None defaults.
        """
        group = parser.add_argument_group(name)
        for key, value in vars(self).items():
            shorthand = False
            if key.startswith("_"):
                shorthand = True
                key = key[1:]
            t = type(value)
            value = value if not fill_none else None
            if shorthand:
                if t == bool:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, action="store_true")
                else:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, type=t)
            else:
                if t == bool:
                    group.add_argument("--" + key, default=value, action="store_true")
                else:
                    group.add_argument("--" + key, default=value, type=t)

    def extract(self, args):
        """
        Pick the options that belong to this group out of the parsed namespace.
        """
        group = GroupParams()
        for arg in vars(args).items():
            if arg[0] in vars(self) or ("_" + arg[0]) in vars(self):
                setattr(group, arg[0], arg[1])
        return group

class ModelParams(ParamGroup):
    def __init__(self, parser, sentinel=False):
        self.sh_degree = 3
        self._source_path = ""
        self._model_path = ""
        self._images = "images"
        self._resolution = -1
        self._white_background = False
        self.data_device = "cuda"
        self.eval = False
        # "pcd" seeds from the scene point cloud, "random" samples a cube of init_extent
        self.init_mode = "pcd"
        self.init_num_points = 100_000
        self.init_extent = 3.0
        self.init_opacity = 0.1
        super().__init__(parser, "Loading Parameters", sentinel)

    def extract(self, args):
        g = super().extract(args)
        g.source_path = os.path.abspath(g.source_path)
        return g

class PipelineParams(ParamGroup):
    def __init__(self, parser):
        self.tile_size = 16
        # depth-ordered splats composited per vectorized step
        self.chunk_size = 32
        # low-pass filter added to the projected covariance diagonal (pixels^2)
        self.eps2d = 0.3
        self.near_plane = 0.01
        self.debug = False
        super().__init__(parser, "Pipeline Parameters")

class OptimizationParams(ParamGroup):
    def __init__(self, parser):
        self.iterations = 30_000
        self.position_lr_init = 0.00016
        self.position_lr_final = 0.0000016
        self.position_lr_delay_mult = 0.01
        self.position_lr_max_steps = 30_000
        self.feature_lr = 0.0025
        self.opacity_lr = 0.05
        self.scaling_lr = 0.005
        # 0 keeps the scaling learning rate constant
        self.scaling_lr_final = 0.0
        self.rotation_lr = 0.001
        self.sh_increase_interval = 1000
        self.percent_dense = 0.01
        self.lambda_dssim = 0.2
        self.l2 = False
        self.random_background = False

        # density control, shared by both strategies
        self.strategy = "adc"
        self.densification_interval = 100
        self.densify_from_iter = 500
        self.densify_until_iter = 15_000
        self.min_opacity = 0.005

        # adaptive density control (clone / split / prune / opacity reset)
        self.opacity_reset_interval = 3000
        self.densify_grad_threshold = 0.0002
        self.max_screen_size = 20
        # prune splats unseen for this many density cycles, 0 disables
        self.prune_stale_cycles = 0

        # stochastic relocation (MCMC)
        self.cap_max = 1_000_000
        self.noise_lr = 5e5
        self.opacity_reg = 0.01
        self.scale_reg = 0.01
        # "opacity" or "opacity_grad"
        self.relocation_score = "opacity"
        self.relocation_lambda_opacity = 0.5
        self.relocation_lambda_grad = 0.5
        self.relocation_noise = 0.01
        super().__init__(parser, "Optimization Parameters")
