import json
import time
import uuid
from dataclasses import dataclass
from datetime import date
import config_master as config
from utils_notation import AnalysisResult


@dataclass(frozen=True)
class HistoryItem:
    id: str
    timestamp: int
    image_name: str
    original_result: AnalysisResult
    corrected_result: AnalysisResult

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "imageName": self.image_name,
            "originalResult": self.original_result.to_dict(),
            "correctedResult": self.corrected_result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'HistoryItem':
        return cls(
            id=str(data["id"]),
            timestamp=int(data["timestamp"]),
            image_name=data.get("imageName", ""),
            original_result=AnalysisResult.from_dict(data.get("originalResult") or {}),
            corrected_result=AnalysisResult.from_dict(data.get("correctedResult") or {}),
        )


class HistoryLog:
    """
    Correction history for one session, newest first, capped at max_items.
    Each entry pairs what the model saw with what the user fixed, so the
    export doubles as a training dataset.
    """

    def __init__(self, items=None, max_items: int = config.HISTORY_LIMIT):
        self.max_items = max_items
        self._items = list(items or [])[:max_items]

    def add(self, image_name: str, original: AnalysisResult, corrected: AnalysisResult) -> HistoryItem:
        now_ms = int(time.time() * 1000)
        item = HistoryItem(uuid.uuid4().hex, now_ms, image_name, original, corrected)
        self._items = [item] + self._items[:self.max_items - 1]
        return item

    def items(self) -> list:
        return list(self._items)

    def clear(self):
        self._items = []

    def __len__(self):
        return len(self._items)

    def to_list(self) -> list:
        return [item.to_dict() for item in self._items]

    @classmethod
    def from_list(cls, data, max_items: int = config.HISTORY_LIMIT) -> 'HistoryLog':
        items = []
        for entry in data or []:
            try:
                items.append(HistoryItem.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                print(f"WARNING: Skipping unreadable history entry: {e}")
        return cls(items, max_items)

    def export_json(self) -> str:
        return json.dumps(self.to_list(), ensure_ascii=False, indent=2)

    @staticmethod
    def export_filename(day: date = None) -> str:
        day = day or date.today()
        return f"dental_ai_training_data_{day.isoformat()}.json"
