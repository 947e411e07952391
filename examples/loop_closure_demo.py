#!/usr/bin/env python3
"""
Demo: build a small graph on a stereo rig, persist it, and collect loop-closure
correspondences for a revisiting frame.
"""

import logging
import sys
import tempfile
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).parent.parent))

from vibackend.common.config import load_camera_rig_config, load_imu_parameters
from vibackend.common.data_structures import KeypointIdentifier, MultiFrame, Transformation
from vibackend.estimation.camera_model import CameraRig, ProjectionStatus
from vibackend.estimation.graph import ViGraph
from vibackend.estimation.session import Session
from vibackend.loop_closure import LoopClosureCorrespondences

CONFIG_DIR = Path(__file__).parent.parent / "config"


def observe(rig, T_WS, hp_W, camera_index):
    """Project a landmark into one camera, returning the pixel or None."""
    T_CW = (T_WS * rig.T_SC(camera_index)).inverse()
    hp_C = T_CW.transform_homogeneous(hp_W)
    result = rig.geometry(camera_index).project(hp_C[:3] / hp_C[3])
    return result.pixel if result.status == ProjectionStatus.SUCCESSFUL else None


def main():
    """Run the demo."""
    logging.basicConfig(level=logging.INFO, format="%(name)s: %(message)s")
    print("Loop-Closure Demo")
    print("=" * 40)

    rig = CameraRig.from_config(load_camera_rig_config(CONFIG_DIR / "camera_rig_stereo.yaml"))
    imu = load_imu_parameters(CONFIG_DIR / "imu.yaml")
    print(f"Loaded rig with {rig.num_cameras} cameras")

    rng = np.random.default_rng(0)
    landmarks = {
        i + 1: np.append(rng.uniform([-2, -2, 4], [2, 2, 8]), 1.0)
        for i in range(30)
    }

    poses = {
        0: Transformation(r=[0.0, 0.0, 0.0]),
        1: Transformation(r=[0.3, 0.0, 0.0]),
    }

    graph = ViGraph()
    frames = []
    for frame_id, T_WS in poses.items():
        graph.add_state(frame_id, T_WS)
        frame = MultiFrame(id=frame_id, timestamp=0.1 * frame_id, rig=rig)
        for cam in range(rig.num_cameras):
            keypoints = []
            for lm_id, hp_W in landmarks.items():
                pixel = observe(rig, T_WS, hp_W, cam)
                if pixel is None:
                    continue
                if not graph.has_landmark(lm_id):
                    graph.add_landmark(lm_id, hp_W)
                kid = KeypointIdentifier(frame_id, cam, len(keypoints))
                graph.add_observation(kid, lm_id, rig.geometry(cam), rig.T_SC(cam),
                                      pixel, keypoint_size=12.0)
                keypoints.append(pixel)
            frame.set_keypoints(cam, np.array(keypoints).reshape(-1, 2))
        frames.append(frame)

    graph.add_relative_pose_error(0, 1, poses[0].inverse() * poses[1],
                                  translation_variance=1e-4, rotation_variance=1e-4)
    evaluation = graph.evaluate()
    print(f"Graph: {graph.num_states} states, {graph.num_landmarks} landmarks, "
          f"{graph.num_residuals} residuals, cost {evaluation.cost:.3e}")

    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "session.json"
        with Session(imu, rig, graph, frames) as session:
            session.save(path)

        restored = Session()
        restored.load(path)
        print(f"Restored session with {restored.graph.num_residuals} residuals")

        query = restored.frame(1)
        correspondences = LoopClosureCorrespondences(
            restored.graph.landmarks(), restored.graph.observations(), restored.camera_rig, query
        )
        print(f"Frame {query.id}: {len(correspondences)} correspondences")
        arrays = correspondences.as_arrays()
        if len(correspondences):
            print(f"  mean sigma angle: {arrays['sigma_angles'].mean():.3e} rad")
        restored.close()

    print("\nDemo completed successfully!")


if __name__ == "__main__":
    main()
