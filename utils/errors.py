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

class SplatStoreInvariantError(RuntimeError):
    """Per-splat arrays (parameters, optimizer moments, statistics) disagree in length."""
    pass

class InvalidCameraError(ValueError):
    pass

class SceneFormatError(ValueError):
    """Raised by the scene readers before training when input data is malformed."""
    pass

class NumericalDivergenceError(RuntimeError):
    def __init__(self, iteration, what="loss"):
        self.iteration = iteration
        self.what = what
        super().__init__("Non-finite {} at iteration {}".format(what, iteration))
