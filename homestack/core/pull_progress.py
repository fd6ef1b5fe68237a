"""Aggregate per-image pull progress into one operation percent."""

from ..constants import DOWNLOAD_COMPLETE_STATUS, PROGRESS_PULL_SPAN, PROGRESS_PULL_START
from ..models.operation import PullEvent


class ImagePullProgressTracker:
    """Running maximum percent per image, averaged across all images.

    A lower percent reported later for the same image never moves it backwards.
    """

    def __init__(self, images: list[str]):
        self._progress: dict[str, float] = {image: 0.0 for image in images}

    @property
    def images(self) -> list[str]:
        return list(self._progress)

    @property
    def pull_percent(self) -> float:
        """Mean percent across images, 100 when there is nothing to pull."""
        if not self._progress:
            return 100.0
        return sum(self._progress.values()) / len(self._progress)

    @property
    def operation_percent(self) -> float:
        return PROGRESS_PULL_START + self.pull_percent * PROGRESS_PULL_SPAN / 100

    def record(self, image: str, event: PullEvent) -> float:
        """Fold one pull event in and return the overall operation percent."""
        current = self._progress.get(image, 0.0)
        detail_percent = event.progress_detail.percent if event.progress_detail else None

        if detail_percent is not None:
            current = max(current, min(100.0, float(detail_percent)))
        elif DOWNLOAD_COMPLETE_STATUS in event.status.lower():
            current = 100.0

        self._progress[image] = current
        return self.operation_percent

    def complete(self, image: str) -> float:
        self._progress[image] = 100.0
        return self.operation_percent
