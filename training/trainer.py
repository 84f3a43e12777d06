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

import copy
import os
import random
import threading
from enum import Enum
import torch
from tqdm import tqdm
from gaussian_renderer import render
from scene.density_controller import DensityController
from utils.loss_utils import photometric_loss, l1_loss, ssim
from utils.image_utils import psnr
from utils.errors import NumericalDivergenceError, SplatStoreInvariantError

class TrainerState(Enum):
    INIT = "init"
    SAMPLE_VIEW = "sample_view"
    FORWARD = "forward"
    LOSS = "loss"
    BACKWARD = "backward"
    OPTIMIZER_STEP = "optimizer_step"
    DENSITY_CONTROL = "density_control"
    EVALUATE = "evaluate"
    CHECKPOINT = "checkpoint"
    DONE = "done"
    STOPPED = "stopped"
    FAILED = "failed"

class Trainer:
    """
    Drives the optimization of a scene: one view per iteration, strictly sequential.

    The scene object needs `gaussians`, `model_path`, `cameras_extent`,
    `getTrainCameras()`, `getTestCameras()` and `save(iteration)`.
    """

    def __init__(self, dataset, opt, pipe, scene, testing_iterations=(), saving_iterations=(),
                 checkpoint_iterations=(), checkpoint=None, seed=0, progress=True, tb_writer=None):
        self.dataset = dataset
        self.opt = opt
        self.pipe = pipe
        self.scene = scene
        self.gaussians = scene.gaussians
        self.testing_iterations = set(testing_iterations)
        self.saving_iterations = set(saving_iterations)
        self.checkpoint_iterations = set(checkpoint_iterations)
        self.progress = progress
        self.tb_writer = tb_writer

        self.state = TrainerState.INIT
        self.iteration = 0
        self.skipped_iterations = 0
        self.reports = []
        self.evaluations = {}
        self._stop_event = threading.Event()
        self._rng = random.Random(seed)
        self._viewpoint_stack = None
        self._last_good = None

        self.gaussians.training_setup(opt)
        self.first_iter = 0
        if checkpoint:
            (model_params, self.first_iter) = torch.load(checkpoint, weights_only=False)
            self.gaussians.restore(model_params, opt)
        self.iteration = self.first_iter

        self.controller = DensityController(opt, self.gaussians, scene.cameras_extent,
                                            white_background=dataset.white_background)

        bg_color = [1, 1, 1] if dataset.white_background else [0, 0, 0]
        self.background = torch.tensor(bg_color, dtype=self.gaussians.dtype, device=self.gaussians.device)

    def request_stop(self):
        """Ask the loop to stop after the iteration in flight; safe from any thread."""
        self._stop_event.set()

    @property
    def stop_requested(self):
        return self._stop_event.is_set()

    def next_view(self):
        """Cameras are drawn without replacement, reshuffled once every camera was used."""
        if not self._viewpoint_stack:
            self._viewpoint_stack = self.scene.getTrainCameras().copy()
            self._rng.shuffle(self._viewpoint_stack)
        return self._viewpoint_stack.pop()

    def checkpoint_path(self, iteration):
        return os.path.join(self.scene.model_path, "chkpnt" + str(iteration) + ".pth")

    def save_checkpoint(self, iteration):
        os.makedirs(self.scene.model_path, exist_ok=True)
        path = self.checkpoint_path(iteration)
        torch.save((self.gaussians.capture(), iteration), path)
        return path

    def _check_gradients(self, iteration):
        for group in self.gaussians.optimizer.param_groups:
            grad = group["params"][0].grad
            if grad is not None and not torch.isfinite(grad).all():
                self._diverged(iteration, "gradient of " + group["name"])

    def _diverged(self, iteration, what):
        # parameters have not been stepped yet, they are still the last good state
        self.state = TrainerState.FAILED
        self.gaussians.optimizer.zero_grad(set_to_none = True)
        path = self.save_checkpoint(iteration - 1)
        print("\n[ITER {}] Non-finite {}, saved last good state to {}".format(iteration, what, path))
        raise NumericalDivergenceError(iteration, what)

    def _failed(self, iteration, error):
        self.state = TrainerState.FAILED
        if self._last_good is not None:
            model_params, good_iteration = self._last_good
        else:
            model_params, good_iteration = self.gaussians.capture(), iteration - 1
        os.makedirs(self.scene.model_path, exist_ok=True)
        path = self.checkpoint_path(good_iteration)
        try:
            torch.save((model_params, good_iteration), path)
            print("\n[ITER {}] {}, saved last good state to {}".format(iteration, error, path))
        except (OSError, RuntimeError) as save_error:
            print("\n[ITER {}] {}, could not save last good state: {}".format(iteration, error, save_error))

    def training_step(self, iteration):
        """
        One optimization step on one view.

        :return: dict with loss values, or None when the view was skipped.
        """
        gaussians = self.gaussians
        opt = self.opt
        self._last_good = None

        xyz_lr = gaussians.update_learning_rate(iteration)

        # Every sh_increase_interval iterations we increase the levels of SH up to a maximum degree
        if iteration % opt.sh_increase_interval == 0:
            gaussians.oneupSHdegree()

        self.state = TrainerState.SAMPLE_VIEW
        viewpoint_cam = self.next_view()

        self.state = TrainerState.FORWARD
        bg = torch.rand((3), dtype=gaussians.dtype, device=gaussians.device) if opt.random_background else self.background
        render_pkg = render(viewpoint_cam, gaussians, self.pipe, bg)
        image = render_pkg["render"]

        if not render_pkg["visibility_filter"].any():
            self.skipped_iterations += 1
            tqdm.write("[ITER {}] No visible splats from {}, skipping".format(iteration, viewpoint_cam.image_name))
            return None

        self.state = TrainerState.LOSS
        gt_image = viewpoint_cam.original_image.to(device=image.device, dtype=image.dtype)
        loss, Ll1 = photometric_loss(image, gt_image, opt.lambda_dssim, opt.l2)
        loss = loss + self.controller.regularization_loss()

        self.state = TrainerState.BACKWARD
        if not torch.isfinite(loss).all():
            self._diverged(iteration, "loss")
        loss.backward()
        self._check_gradients(iteration)

        with torch.no_grad():
            self.state = TrainerState.OPTIMIZER_STEP
            gaussians.optimizer.step()
            gaussians.optimizer.zero_grad(set_to_none = True)

            self.state = TrainerState.DENSITY_CONTROL
            self.controller.update_stats(render_pkg, iteration)
            if self.controller.should_run(iteration) or self.controller.should_reset_opacity(iteration):
                # structural edits below, keep a copy to fall back on
                self._last_good = (copy.deepcopy(gaussians.capture()), iteration)
            if self.controller.should_run(iteration):
                report = self.controller.step(iteration)
                self.reports.append(report)
                tqdm.write(str(report))
            if self.controller.should_reset_opacity(iteration):
                self.controller.reset_opacity()
            self.controller.inject_noise(xyz_lr)

        return {"loss": loss.item(), "l1": Ll1.item(), "num_points": gaussians.num_points}

    def evaluate(self, iteration):
        """L1, PSNR and SSIM over the test cameras and a few training cameras."""
        self.state = TrainerState.EVALUATE
        if self.gaussians.device.type == "cuda":
            torch.cuda.empty_cache()
        train_cameras = self.scene.getTrainCameras()
        validation_configs = ({'name': 'test', 'cameras' : self.scene.getTestCameras()},
                              {'name': 'train', 'cameras' : [train_cameras[idx % len(train_cameras)] for idx in range(5, 30, 5)]})

        results = {}
        with torch.no_grad():
            for config in validation_configs:
                if not config['cameras'] or len(config['cameras']) == 0:
                    continue
                l1_test = 0.0
                psnr_test = 0.0
                ssim_test = 0.0
                for viewpoint in config['cameras']:
                    image = torch.clamp(render(viewpoint, self.gaussians, self.pipe, self.background)["render"], 0.0, 1.0)
                    gt_image = torch.clamp(viewpoint.original_image.to(device=image.device, dtype=image.dtype), 0.0, 1.0)
                    l1_test += l1_loss(image, gt_image).mean().double()
                    psnr_test += psnr(image, gt_image).mean().double()
                    ssim_test += ssim(image, gt_image).mean().double()
                psnr_test /= len(config['cameras'])
                l1_test /= len(config['cameras'])
                ssim_test /= len(config['cameras'])
                print("\n[ITER {}] Evaluating {}: L1 {} PSNR {} SSIM {}".format(iteration, config['name'], l1_test, psnr_test, ssim_test))
                if self.tb_writer:
                    self.tb_writer.add_scalar(config['name'] + '/loss_viewpoint - l1_loss', l1_test, iteration)
                    self.tb_writer.add_scalar(config['name'] + '/loss_viewpoint - psnr', psnr_test, iteration)
                    self.tb_writer.add_scalar(config['name'] + '/loss_viewpoint - ssim', ssim_test, iteration)
                results[config['name']] = {"l1": float(l1_test), "psnr": float(psnr_test), "ssim": float(ssim_test)}
        if self.tb_writer:
            self.tb_writer.add_histogram("scene/opacity_histogram", self.gaussians.get_opacity, iteration)
            self.tb_writer.add_scalar('total_points', self.gaussians.num_points, iteration)
        self.evaluations[iteration] = results
        return results

    def train(self):
        """
        Run until opt.iterations, a stop request or a fatal error.

        :return: the final TrainerState (DONE or STOPPED).
        :raises NumericalDivergenceError: after checkpointing the last good state.
        :raises SplatStoreInvariantError: likewise, the state is left at FAILED.
        """
        opt = self.opt
        first_iter = self.first_iter + 1
        progress_bar = tqdm(range(first_iter, opt.iterations + 1), desc="Training progress", disable=not self.progress)
        ema_loss_for_log = 0.0

        for iteration in range(first_iter, opt.iterations + 1):
            if self.stop_requested:
                self.state = TrainerState.CHECKPOINT
                path = self.save_checkpoint(self.iteration)
                progress_bar.close()
                print("\nStop requested, saved iteration {} to {}".format(self.iteration, path))
                self.state = TrainerState.STOPPED
                return self.state

            try:
                step = self.training_step(iteration)
            except SplatStoreInvariantError as e:
                progress_bar.close()
                self._failed(iteration, e)
                raise
            except NumericalDivergenceError:
                progress_bar.close()
                raise
            self.iteration = iteration

            if step is not None:
                ema_loss_for_log = 0.4 * step["loss"] + 0.6 * ema_loss_for_log
                if self.tb_writer:
                    self.tb_writer.add_scalar('train_loss_patches/l1_loss', step["l1"], iteration)
                    self.tb_writer.add_scalar('train_loss_patches/total_loss', step["loss"], iteration)
                    self.tb_writer.add_scalar('num_points', step["num_points"], iteration)
            progress_bar.set_postfix({"Loss": f"{ema_loss_for_log:.{7}f}", "Splats": self.gaussians.num_points})
            progress_bar.update(1)

            if iteration in self.testing_iterations:
                self.evaluate(iteration)

            if iteration in self.saving_iterations:
                self.state = TrainerState.CHECKPOINT
                print("\n[ITER {}] Saving Gaussians".format(iteration))
                self.scene.save(iteration)

            if iteration in self.checkpoint_iterations:
                self.state = TrainerState.CHECKPOINT
                print("\n[ITER {}] Saving Checkpoint".format(iteration))
                self.save_checkpoint(iteration)

        progress_bar.close()
        self.state = TrainerState.DONE
        return self.state
