"""
Per-stage "needs action" policies.

Each stage maps to a plain predicate over a subject's source images and
outputs, so every policy can be tested on its own.
"""

from typing import Callable

from .models import BatchItem, Output, OutputStatus, Stage
from .pairing import planned_shot_types

NeedsAction = Callable[[list[BatchItem], list[Output]], bool]


def upload_needs_action(images: list[BatchItem], outputs: list[Output]) -> bool:
    return not any(img.source_url for img in images)


def crop_needs_action(images: list[BatchItem], outputs: list[Output]) -> bool:
    return not images or any(not img.head_cropped_url for img in images)


def match_needs_action(images: list[BatchItem], outputs: list[Output]) -> bool:
    cropped = [img for img in images if img.head_cropped_url]
    return not cropped or any(not img.digital_talent_id for img in cropped)


def generate_needs_action(images: list[BatchItem], outputs: list[Output]) -> bool:
    required = planned_shot_types([img.view for img in images])
    if not required:
        return True
    completed = {o.view for o in outputs if o.status == OutputStatus.COMPLETED}
    return any(view not in completed for view in required)


def review_needs_action(images: list[BatchItem], outputs: list[Output]) -> bool:
    required = planned_shot_types([img.view for img in images])
    if not required:
        return True
    selected = {o.view for o in outputs if o.is_selected}
    return any(view not in selected for view in required)


NEEDS_ACTION: dict[Stage, NeedsAction] = {
    Stage.UPLOAD: upload_needs_action,
    Stage.CROP: crop_needs_action,
    Stage.MATCH: match_needs_action,
    Stage.GENERATE: generate_needs_action,
    Stage.REVIEW: review_needs_action,
}


def needs_action(stage: Stage, images: list[BatchItem], outputs: list[Output]) -> bool:
    return NEEDS_ACTION[stage](images, outputs)
