"""
Estimation graph holding pose states, homogeneous landmarks and the
residual blocks connecting them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from vibackend.common.config import RelativePoseNoise
from vibackend.common.data_structures import KeypointIdentifier, NO_LANDMARK, Transformation
from vibackend.estimation.camera_model import PinholeCamera
from vibackend.estimation.manifolds import HomogeneousPointManifold, PoseManifold
from vibackend.estimation.pose_error import PoseError
from vibackend.estimation.relative_pose_error import RelativePoseError
from vibackend.estimation.reprojection_error import ReprojectionError
from vibackend.estimation.residuals import ManifoldResidual, residual_from_dict

logger = logging.getLogger(__name__)


class ParameterKind(str, Enum):
    """Kinds of parameter blocks stored in the graph."""
    POSE = "pose"
    LANDMARK = "landmark"


@dataclass(frozen=True)
class ParameterKey:
    """Reference to a parameter block of the graph."""
    kind: ParameterKind
    id: int

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ParameterKey':
        return cls(ParameterKind(data["kind"]), int(data["id"]))


def pose_key(state_id: int) -> ParameterKey:
    return ParameterKey(ParameterKind.POSE, state_id)


def landmark_key(landmark_id: int) -> ParameterKey:
    return ParameterKey(ParameterKind.LANDMARK, landmark_id)


@dataclass
class ResidualBlock:
    """A residual together with the parameter blocks it connects."""
    id: int
    residual: ManifoldResidual
    parameter_keys: Tuple[ParameterKey, ...]


@dataclass
class GraphEvaluation:
    """
    Residuals of the whole graph at the current parameter values.

    Attributes:
        residuals: Whitened residuals stacked in residual id order
        residual_ids: Residual id of each block, in stacking order
        cost: 0.5 * squared norm of all residuals
    """
    residuals: np.ndarray
    residual_ids: List[int]
    cost: float


class ViGraph:
    """
    Graph of pose states (T_WS), landmarks (homogeneous, id > 0) and residual
    blocks. Keypoint observations are reprojection residuals that also record
    the keypoint -> landmark association used for loop closure.
    """

    def __init__(self, relative_pose_noise: Optional[RelativePoseNoise] = None):
        """
        Args:
            relative_pose_noise: Default variances for relative pose constraints
        """
        self.relative_pose_noise = relative_pose_noise
        self._states: Dict[int, np.ndarray] = {}
        self._landmarks: Dict[int, np.ndarray] = {}
        self._residual_blocks: Dict[int, ResidualBlock] = {}
        self._observations: Dict[KeypointIdentifier, Tuple[int, int]] = {}
        self._next_residual_id = 1

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def add_state(self, state_id: int, T_WS: Union[Transformation, np.ndarray]) -> None:
        """Add a pose state."""
        if state_id in self._states:
            raise KeyError(f"State {state_id} already exists")
        self._states[state_id] = self._pose_parameters(T_WS)

    def set_state(self, state_id: int, T_WS: Union[Transformation, np.ndarray]) -> None:
        self._require(pose_key(state_id))
        self._states[state_id] = self._pose_parameters(T_WS)

    def state(self, state_id: int) -> Transformation:
        self._require(pose_key(state_id))
        return Transformation.from_parameters(self._states[state_id])

    def has_state(self, state_id: int) -> bool:
        return state_id in self._states

    def state_ids(self) -> List[int]:
        return sorted(self._states)

    def remove_state(self, state_id: int) -> None:
        """Remove a state and every residual block referencing it."""
        self._require(pose_key(state_id))
        self._remove_residuals_of(pose_key(state_id))
        del self._states[state_id]

    @property
    def num_states(self) -> int:
        return len(self._states)

    # ------------------------------------------------------------------
    # Landmarks
    # ------------------------------------------------------------------

    def add_landmark(self, landmark_id: int, hp_W: np.ndarray) -> None:
        """Add a homogeneous landmark [x, y, z, w]. Id 0 is reserved."""
        if landmark_id == NO_LANDMARK or landmark_id < 0:
            raise ValueError(f"Landmark id must be positive, got {landmark_id}")
        if landmark_id in self._landmarks:
            raise KeyError(f"Landmark {landmark_id} already exists")
        self._landmarks[landmark_id] = self._landmark_parameters(hp_W)

    def set_landmark(self, landmark_id: int, hp_W: np.ndarray) -> None:
        self._require(landmark_key(landmark_id))
        self._landmarks[landmark_id] = self._landmark_parameters(hp_W)

    def landmark(self, landmark_id: int) -> np.ndarray:
        self._require(landmark_key(landmark_id))
        return self._landmarks[landmark_id].copy()

    def has_landmark(self, landmark_id: int) -> bool:
        return landmark_id in self._landmarks

    def landmark_ids(self) -> List[int]:
        return sorted(self._landmarks)

    def landmarks(self) -> Dict[int, np.ndarray]:
        """Snapshot of the landmark table (id -> homogeneous point)."""
        return {lm_id: hp.copy() for lm_id, hp in self._landmarks.items()}

    def remove_landmark(self, landmark_id: int) -> None:
        """Remove a landmark and every residual block referencing it."""
        self._require(landmark_key(landmark_id))
        self._remove_residuals_of(landmark_key(landmark_id))
        del self._landmarks[landmark_id]

    @property
    def num_landmarks(self) -> int:
        return len(self._landmarks)

    # ------------------------------------------------------------------
    # Residuals
    # ------------------------------------------------------------------

    def add_residual(self, residual: ManifoldResidual, *parameter_keys: ParameterKey) -> int:
        """
        Add a residual block.

        Args:
            residual: Error term
            parameter_keys: One key per parameter block of the residual

        Returns:
            Residual block id
        """
        residual_id = self._next_residual_id
        self._insert_residual(residual_id, residual, parameter_keys)
        self._next_residual_id += 1
        return residual_id

    def add_relative_pose_error(
        self,
        state_id_a: int,
        state_id_b: int,
        T_AB: Transformation,
        information: Optional[np.ndarray] = None,
        translation_variance: Optional[float] = None,
        rotation_variance: Optional[float] = None
    ) -> int:
        """
        Add a relative pose constraint.

        The weight comes from, in order of precedence, an information matrix,
        explicit translation and rotation variances, or the graph's
        relative pose noise settings.
        """
        if information is not None:
            residual = RelativePoseError(information, T_AB)
        elif translation_variance is not None and rotation_variance is not None:
            residual = RelativePoseError.from_variances(translation_variance, rotation_variance, T_AB)
        elif translation_variance is None and rotation_variance is None \
                and self.relative_pose_noise is not None:
            noise = self.relative_pose_noise
            residual = RelativePoseError.from_variances(
                noise.translation_variance, noise.rotation_variance, T_AB
            )
        else:
            raise ValueError("Relative pose constraint needs information or variances")
        return self.add_residual(residual, pose_key(state_id_a), pose_key(state_id_b))

    def add_pose_prior(self, state_id: int, T_WS: Transformation, information: np.ndarray) -> int:
        return self.add_residual(PoseError(information, T_WS), pose_key(state_id))

    def add_observation(
        self,
        keypoint_id: KeypointIdentifier,
        landmark_id: int,
        camera: PinholeCamera,
        T_SC: Transformation,
        measurement: np.ndarray,
        keypoint_size: float = 1.0
    ) -> int:
        """
        Add a reprojection residual for a keypoint and record its association.

        Returns:
            Residual block id
        """
        if keypoint_id in self._observations:
            raise KeyError(f"Keypoint {keypoint_id} is already observed")
        residual = ReprojectionError.from_keypoint_size(camera, T_SC, measurement, keypoint_size)
        residual_id = self.add_residual(
            residual, pose_key(keypoint_id.frame_id), landmark_key(landmark_id)
        )
        self._observations[keypoint_id] = (landmark_id, residual_id)
        return residual_id

    def remove_observation(self, keypoint_id: KeypointIdentifier) -> None:
        _, residual_id = self._observations[keypoint_id]
        self.remove_residual(residual_id)

    def remove_residual(self, residual_id: int) -> None:
        if residual_id not in self._residual_blocks:
            raise KeyError(f"Residual {residual_id} does not exist")
        del self._residual_blocks[residual_id]
        for kid in [k for k, (_, rid) in self._observations.items() if rid == residual_id]:
            del self._observations[kid]

    def residual_block(self, residual_id: int) -> ResidualBlock:
        return self._residual_blocks[residual_id]

    def residual_ids(self) -> List[int]:
        return sorted(self._residual_blocks)

    @property
    def num_residuals(self) -> int:
        return len(self._residual_blocks)

    def observations(self) -> Dict[KeypointIdentifier, int]:
        """Keypoint -> landmark id associations."""
        return {kid: lm_id for kid, (lm_id, _) in self._observations.items()}

    def parameters(self, key: ParameterKey) -> np.ndarray:
        """Current ambient parameters of a block."""
        self._require(key)
        table = self._states if key.kind == ParameterKind.POSE else self._landmarks
        return table[key.id].copy()

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self) -> GraphEvaluation:
        """Evaluate all residual blocks at the current parameter values."""
        residuals = []
        residual_ids = []
        for residual_id in self.residual_ids():
            block = self._residual_blocks[residual_id]
            params = [self.parameters(key) for key in block.parameter_keys]
            evaluation = block.residual.compute(params, with_jacobians=False)
            residuals.append(evaluation.residual)
            residual_ids.append(residual_id)

        stacked = np.concatenate(residuals) if residuals else np.zeros(0)
        return GraphEvaluation(
            residuals=stacked,
            residual_ids=residual_ids,
            cost=0.5 * float(stacked @ stacked)
        )

    def clear(self) -> None:
        """Remove all content."""
        self._states.clear()
        self._landmarks.clear()
        self._residual_blocks.clear()
        self._observations.clear()
        self._next_residual_id = 1

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "states": [
                {"id": sid, "parameters": self._states[sid].tolist()}
                for sid in self.state_ids()
            ],
            "landmarks": [
                {"id": lid, "hp": self._landmarks[lid].tolist()}
                for lid in self.landmark_ids()
            ],
            "residuals": [
                {
                    "id": rid,
                    "residual": self._residual_blocks[rid].residual.to_dict(),
                    "parameters": [k.to_dict() for k in self._residual_blocks[rid].parameter_keys]
                }
                for rid in self.residual_ids()
            ],
            "observations": [
                {"keypoint": kid.to_dict(), "landmark_id": lm_id, "residual_id": rid}
                for kid, (lm_id, rid) in sorted(self._observations.items())
            ],
            "next_residual_id": self._next_residual_id,
            "relative_pose_noise": (
                None if self.relative_pose_noise is None
                else self.relative_pose_noise.model_dump(mode="json")
            )
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ViGraph':
        """Create from dictionary."""
        noise = data.get("relative_pose_noise")
        graph = cls(RelativePoseNoise(**noise) if noise else None)
        for state in data.get("states", []):
            graph.add_state(int(state["id"]), np.array(state["parameters"]))
        for lm in data.get("landmarks", []):
            graph.add_landmark(int(lm["id"]), np.array(lm["hp"]))

        for block in data.get("residuals", []):
            keys = tuple(ParameterKey.from_dict(k) for k in block["parameters"])
            graph._insert_residual(int(block["id"]), residual_from_dict(block["residual"]), keys)

        for obs in data.get("observations", []):
            residual_id = int(obs["residual_id"])
            if residual_id not in graph._residual_blocks:
                raise ValueError(f"Observation references unknown residual {residual_id}")
            kid = KeypointIdentifier.from_dict(obs["keypoint"])
            graph._observations[kid] = (int(obs["landmark_id"]), residual_id)

        max_id = max(graph._residual_blocks, default=0)
        graph._next_residual_id = max(int(data.get("next_residual_id", 1)), max_id + 1)
        return graph

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, key: ParameterKey) -> None:
        table = self._states if key.kind == ParameterKind.POSE else self._landmarks
        if key.id not in table:
            raise KeyError(f"Unknown {key.kind.value} {key.id}")

    def _insert_residual(
        self,
        residual_id: int,
        residual: ManifoldResidual,
        parameter_keys: Tuple[ParameterKey, ...]
    ) -> None:
        if residual_id in self._residual_blocks:
            raise ValueError(f"Duplicate residual id {residual_id}")
        if len(parameter_keys) != residual.num_parameter_blocks:
            raise ValueError(
                f"{type(residual).__name__} needs {residual.num_parameter_blocks} "
                f"parameter blocks, got {len(parameter_keys)}"
            )
        for key, manifold in zip(parameter_keys, residual.manifolds):
            self._require(key)
            expected = ParameterKind.POSE if isinstance(manifold, PoseManifold) else ParameterKind.LANDMARK
            if key.kind != expected:
                raise ValueError(f"Parameter {key} does not match {type(manifold).__name__}")
        self._residual_blocks[residual_id] = ResidualBlock(
            residual_id, residual, tuple(parameter_keys)
        )

    def _remove_residuals_of(self, key: ParameterKey) -> None:
        for residual_id in [rid for rid, block in self._residual_blocks.items()
                            if key in block.parameter_keys]:
            self.remove_residual(residual_id)

    @staticmethod
    def _pose_parameters(T_WS: Union[Transformation, np.ndarray]) -> np.ndarray:
        if isinstance(T_WS, Transformation):
            return T_WS.parameters()
        parameters = np.array(T_WS, dtype=float).flatten()
        if len(parameters) != PoseManifold.ambient_size:
            raise ValueError(f"Pose parameters must be 7D, got {len(parameters)}")
        return parameters

    @staticmethod
    def _landmark_parameters(hp_W: np.ndarray) -> np.ndarray:
        hp_W = np.array(hp_W, dtype=float).flatten()
        if len(hp_W) != HomogeneousPointManifold.ambient_size:
            raise ValueError(f"Landmark must be homogeneous 4D, got {len(hp_W)}")
        return hp_W
