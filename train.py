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

import os
import sys
import signal
import uuid
from argparse import ArgumentParser, Namespace
import torch
from scene import Scene, GaussianModel
from training import Trainer, TrainerState
from utils.general_utils import safe_state
from utils.errors import NumericalDivergenceError, SplatStoreInvariantError
from arguments import ModelParams, PipelineParams, OptimizationParams
try:
    from torch.utils.tensorboard import SummaryWriter
    TENSORBOARD_FOUND = True
except ImportError:
    TENSORBOARD_FOUND = False

def prepare_output_and_logger(args):
    if not args.model_path:
        if os.getenv('OAR_JOB_ID'):
            unique_str=os.getenv('OAR_JOB_ID')
        else:
            unique_str = str(uuid.uuid4())
        args.model_path = os.path.join("./output/", unique_str[0:10])

    # Set up output folder
    print("Output folder: {}".format(args.model_path))
    os.makedirs(args.model_path, exist_ok = True)
    with open(os.path.join(args.model_path, "cfg_args"), 'w') as cfg_log_f:
        cfg_log_f.write(str(Namespace(**vars(args))))

    # Create Tensorboard writer
    tb_writer = None
    if TENSORBOARD_FOUND:
        tb_writer = SummaryWriter(args.model_path)
    else:
        print("Tensorboard not available: not logging progress")
    return tb_writer

def training(dataset, opt, pipe, testing_iterations, saving_iterations, checkpoint_iterations, checkpoint, seed):
    tb_writer = prepare_output_and_logger(dataset)
    gaussians = GaussianModel(dataset.sh_degree, device=dataset.data_device)
    scene = Scene(dataset, gaussians)
    trainer = Trainer(dataset, opt, pipe, scene,
                      testing_iterations=testing_iterations,
                      saving_iterations=saving_iterations,
                      checkpoint_iterations=checkpoint_iterations,
                      checkpoint=checkpoint,
                      seed=seed,
                      tb_writer=tb_writer)

    def handle_sigint(signum, frame):
        print("\nInterrupt received, stopping after the current iteration")
        trainer.request_stop()
    previous_handler = signal.signal(signal.SIGINT, handle_sigint)

    try:
        state = trainer.train()
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if state == TrainerState.DONE and opt.iterations not in saving_iterations:
        scene.save(opt.iterations)
    return state

if __name__ == "__main__":
    # Set up command line argument parser
    parser = ArgumentParser(description="Training script parameters")
    lp = ModelParams(parser)
    op = OptimizationParams(parser)
    pp = PipelineParams(parser)
    parser.add_argument("--test_iterations", nargs="+", type=int, default=[7_000, 30_000])
    parser.add_argument("--save_iterations", nargs="+", type=int, default=[7_000, 30_000])
    parser.add_argument("--quiet", action="store_true")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--checkpoint_iterations", nargs="+", type=int, default=[])
    parser.add_argument("--start_checkpoint", type=str, default = None)
    args = parser.parse_args(sys.argv[1:])
    args.save_iterations.append(args.iterations)

    print("Optimizing " + args.model_path)

    # Initialize system state (RNG)
    safe_state(args.quiet, args.seed)

    torch.autograd.set_detect_anomaly(pp.extract(args).debug)
    try:
        state = training(lp.extract(args), op.extract(args), pp.extract(args), args.test_iterations,
                         args.save_iterations, args.checkpoint_iterations, args.start_checkpoint, args.seed)
    except (NumericalDivergenceError, SplatStoreInvariantError) as e:
        print("\nTraining failed: {}".format(e))
        sys.exit(1)

    # All done
    if state == TrainerState.STOPPED:
        print("\nTraining stopped.")
    else:
        print("\nTraining complete.")
