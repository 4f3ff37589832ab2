"""
Camera-to-output pairing rules.

Which uploaded input view may produce which output shot type is fixed and not
user-editable. Back shots only ever come from a back input; detail shots
come from a dedicated detail input and from the front. Each shot type only
uses poses from its own library slot.
"""

import logging
from enum import Enum
from typing import Optional

from .errors import PipelineError, ValidationError
from .models import BatchConfig, BatchItem, GenerationTask, Pose

logger = logging.getLogger(__name__)


class InputView(str, Enum):
    FRONT_FULL = "INPUT_FRONT_FULL"
    BACK_FULL = "INPUT_BACK_FULL"
    DETAIL = "INPUT_DETAIL"
    SIDE = "INPUT_SIDE"


class ShotType(str, Enum):
    FRONT_FULL = "FRONT_FULL"
    FRONT_CROPPED = "FRONT_CROPPED"
    DETAIL = "DETAIL"
    BACK_FULL = "BACK_FULL"


# Dispatch order within a run
ALL_SHOT_TYPES = [ShotType.FRONT_FULL, ShotType.FRONT_CROPPED, ShotType.DETAIL, ShotType.BACK_FULL]

INPUT_TO_OUTPUT_RULES: dict[InputView, list[ShotType]] = {
    InputView.FRONT_FULL: [ShotType.FRONT_FULL, ShotType.FRONT_CROPPED, ShotType.DETAIL],
    InputView.BACK_FULL: [ShotType.BACK_FULL],
    InputView.DETAIL: [ShotType.DETAIL],
    InputView.SIDE: [],
}

OUTPUT_REQUIRED_INPUT: dict[ShotType, InputView] = {
    ShotType.FRONT_FULL: InputView.FRONT_FULL,
    ShotType.FRONT_CROPPED: InputView.FRONT_FULL,
    ShotType.DETAIL: InputView.DETAIL,
    ShotType.BACK_FULL: InputView.BACK_FULL,
}

NO_POSES_MESSAGE = "No usable poses found in library"

# Legacy pose-library slots
SLOT_TO_SHOT_TYPE = {
    "A": ShotType.FRONT_FULL,
    "B": ShotType.FRONT_CROPPED,
    "C": ShotType.BACK_FULL,
    "D": ShotType.DETAIL,
}


def parse_input_view(view: Optional[str]) -> Optional[InputView]:
    """Map a batch-item label such as "Front View - IMG_001" to an input view."""
    lowered = (view or "").lower()
    if "front" in lowered:
        return InputView.FRONT_FULL
    if "back" in lowered:
        return InputView.BACK_FULL
    if "detail" in lowered:
        return InputView.DETAIL
    if "side" in lowered:
        return InputView.SIDE
    return None


def resolve_source(shot_type: ShotType, available: set[InputView]) -> Optional[InputView]:
    """Pick the input a shot type is generated from, or None if it cannot be."""
    required = OUTPUT_REQUIRED_INPUT[shot_type]
    if required in available:
        return required
    if shot_type == ShotType.DETAIL and InputView.FRONT_FULL in available:
        return InputView.FRONT_FULL
    return None


def planned_shot_types(views: list[str]) -> list[str]:
    """Shot types a subject with these source views is expected to deliver."""
    available = {v for v in (parse_input_view(view) for view in views) if v is not None}
    return [s.value for s in ALL_SHOT_TYPES if resolve_source(s, available) is not None]


def poses_for_shot_type(shot_type: ShotType, poses: list[Pose], count: int) -> list[Pose]:
    """Pick up to `count` pose templates from the shot type's own slot, deterministically."""
    ordered = sorted(poses, key=lambda p: p.id)
    matching = [
        p for p in ordered
        if SLOT_TO_SHOT_TYPE.get((p.slot or "").upper()) == shot_type
        or (p.slot or "").upper() == shot_type.value
    ]
    return matching[:count]


def expand_tasks(
    run_id: str,
    batch_items: list[BatchItem],
    poses: list[Pose],
    batch_config: BatchConfig,
) -> tuple[list[GenerationTask], list[ValidationError]]:
    """
    Expand one run into generation tasks, ordered by shot type, source item,
    pose slot, then attempt. Every uploaded item feeds each shot type its view
    allows, so a look with front and detail uploads gets DETAIL tasks from both.

    Shot types with no usable input or no pose in their slot come back as
    ValidationErrors instead of tasks. An empty pose library raises.
    """
    if not poses:
        raise PipelineError(NO_POSES_MESSAGE)

    sources: list[tuple[InputView, BatchItem]] = []
    for item in sorted(batch_items, key=lambda i: i.id):
        view = parse_input_view(item.view)
        if view is not None:
            sources.append((view, item))

    tasks: list[GenerationTask] = []
    skipped: list[ValidationError] = []

    for shot_type in ALL_SHOT_TYPES:
        eligible = [(view, item) for view, item in sources if shot_type in INPUT_TO_OUTPUT_RULES[view]]
        if not eligible:
            required = OUTPUT_REQUIRED_INPUT[shot_type]
            skipped.append(ValidationError(
                f"Missing {required.value} for {shot_type.value}",
                shot_type=shot_type.value,
            ))
            continue

        chosen = poses_for_shot_type(shot_type, poses, batch_config.poses_per_shot_type)
        if not chosen:
            skipped.append(ValidationError(
                f"No poses in the library slot for {shot_type.value}",
                shot_type=shot_type.value,
            ))
            continue

        for source_view, source in eligible:
            for pose in chosen:
                for attempt in range(batch_config.attempts_per_pose):
                    tasks.append(GenerationTask(
                        run_id=run_id,
                        batch_item_id=source.id,
                        source_view=source_view.value,
                        source_url=source.source_url,
                        shot_type=shot_type.value,
                        pose_id=pose.id,
                        pose_url=pose.stored_url,
                        attempt_index=attempt,
                        model=batch_config.model,
                    ))

    return tasks, skipped
