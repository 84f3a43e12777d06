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
from torch import nn
import numpy as np
from PIL import Image
from utils.graphics_utils import getWorld2View2, getProjectionMatrixShift
from utils.general_utils import PILtoTorch
from utils.errors import InvalidCameraError

class ViewTransform(NamedTuple):
    viewmatrix : torch.Tensor  # (4, 4) world to camera, column vectors
    projmatrix : torch.Tensor  # (4, 4) camera to clip
    full_proj_transform : torch.Tensor  # projmatrix @ viewmatrix
    camera_center : torch.Tensor  # (3,)
    image_width : int
    image_height : int
    fx : float
    fy : float
    cx : float
    cy : float
    tanfovx : float
    tanfovy : float

def resolve_view(camera, device=None):
    """
    View and projection transforms for a camera. Pure function of the stored
    intrinsics/extrinsics.

    :param camera: any object with fx, fy, cx, cy, image_width, image_height, R, T,
        znear, zfar (and optionally trans, scale).
    :raises InvalidCameraError: non-positive intrinsics or image size, bad clip planes,
        or an R that is not a rotation.
    """
    width, height = int(camera.image_width), int(camera.image_height)
    if width <= 0 or height <= 0:
        raise InvalidCameraError("Image size must be positive, got {}x{}".format(width, height))
    if not (camera.fx > 0 and camera.fy > 0):
        raise InvalidCameraError("Focal lengths must be positive, got fx={} fy={}".format(camera.fx, camera.fy))
    if not (np.isfinite(camera.cx) and np.isfinite(camera.cy)):
        raise InvalidCameraError("Principal point must be finite")
    if not (0 < camera.znear < camera.zfar):
        raise InvalidCameraError("Need 0 < znear < zfar, got {} / {}".format(camera.znear, camera.zfar))

    R = np.asarray(camera.R, dtype=np.float64)
    T = np.asarray(camera.T, dtype=np.float64)
    if R.shape != (3, 3) or T.shape != (3,):
        raise InvalidCameraError("R must be 3x3 and T must be 3-vector")
    if not np.allclose(R @ R.T, np.eye(3), atol=1e-4) or np.linalg.det(R) < 0:
        raise InvalidCameraError("R is not a proper rotation")

    trans = getattr(camera, "trans", np.array([0.0, 0.0, 0.0]))
    scale = getattr(camera, "scale", 1.0)
    viewmatrix = torch.tensor(getWorld2View2(R, T, trans, scale))
    projmatrix = getProjectionMatrixShift(camera.znear, camera.zfar, camera.fx, camera.fy,
                                          camera.cx, camera.cy, width, height)
    full_proj_transform = projmatrix @ viewmatrix
    camera_center = viewmatrix.inverse()[:3, 3]

    if device is not None:
        viewmatrix = viewmatrix.to(device)
        projmatrix = projmatrix.to(device)
        full_proj_transform = full_proj_transform.to(device)
        camera_center = camera_center.to(device)

    return ViewTransform(
        viewmatrix=viewmatrix,
        projmatrix=projmatrix,
        full_proj_transform=full_proj_transform,
        camera_center=camera_center,
        image_width=width,
        image_height=height,
        fx=float(camera.fx),
        fy=float(camera.fy),
        cx=float(camera.cx),
        cy=float(camera.cy),
        tanfovx=width / (2.0 * camera.fx),
        tanfovy=height / (2.0 * camera.fy),
    )

class Camera(nn.Module):
    def __init__(self, colmap_id, R, T, fx, fy, cx, cy, width, height, image_name, uid,
                 image=None, gt_alpha_mask=None, image_path=None, distortion=None,
                 trans=np.array([0.0, 0.0, 0.0]), scale=1.0, data_device = "cuda",
                 znear=0.01, zfar=100.0
                 ):
        super(Camera, self).__init__()

        self.uid = uid
        self.colmap_id = colmap_id
        self.R = R  # camera to world rotation
        self.T = T  # world to camera translation
        self.fx = fx
        self.fy = fy
        self.cx = cx
        self.cy = cy
        self.image_width = width
        self.image_height = height
        self.image_name = image_name
        self.image_path = image_path
        # carried for persistence only, images are expected to be undistorted
        self.distortion = None if distortion is None else np.asarray(distortion, dtype=np.float64)

        try:
            self.data_device = torch.device(data_device)
        except Exception as e:
            print(e)
            print(f"[Warning] Custom device {data_device} failed, fallback to default cpu device" )
            self.data_device = torch.device("cpu")

        self.zfar = zfar
        self.znear = znear

        self.trans = trans
        self.scale = scale

        view = resolve_view(self, self.data_device)
        self.world_view_transform = view.viewmatrix
        self.projection_matrix = view.projmatrix
        self.full_proj_transform = view.full_proj_transform
        self.camera_center = view.camera_center

        self._original_image = None
        self._gt_alpha_mask = gt_alpha_mask
        if image is not None:
            self._set_image(image, gt_alpha_mask)

    def _set_image(self, image, gt_alpha_mask):
        if tuple(image.shape[1:]) != (self.image_height, self.image_width):
            raise InvalidCameraError("Image {} is {}x{} but the camera expects {}x{}".format(
                self.image_name, image.shape[2], image.shape[1], self.image_width, self.image_height))
        image = image.clamp(0.0, 1.0).to(self.data_device)
        if gt_alpha_mask is not None:
            image = image * gt_alpha_mask.to(self.data_device)
        self._original_image = image

    @property
    def original_image(self):
        # decoded on first use when only a path was given
        if self._original_image is None:
            if self.image_path is None:
                return None
            pil_image = Image.open(self.image_path)
            loaded = PILtoTorch(pil_image, (self.image_width, self.image_height))
            gt_image = loaded[:3, ...]
            mask = self._gt_alpha_mask
            if mask is None and loaded.shape[0] == 4:
                mask = loaded[3:4, ...]
            self._set_image(gt_image, mask)
        return self._original_image

    def view(self):
        return resolve_view(self, self.data_device)
