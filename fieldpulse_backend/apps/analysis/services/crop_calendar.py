# apps/analysis/services/crop_calendar.py

"""
Crop-stage lookup keyed by crop type and month.

Windows follow the Indian Rabi (Nov-Apr) and Kharif (Jun-Oct) seasons.
A month may wrap the year end (e.g. Dec-Feb). Months not covered by any
window fall back to the calendar's default stage.
"""

from dataclasses import dataclass

DEFAULT_STAGE = 'vegetative'
BARE_SOIL_STAGES = frozenset({'sowing', 'fallow'})


@dataclass(frozen=True)
class StageWindow:
    start_month: int
    end_month: int
    stage: str

    def contains(self, month):
        if self.start_month <= self.end_month:
            return self.start_month <= month <= self.end_month
        # Wraps the year end
        return month >= self.start_month or month <= self.end_month


DEFAULT_WINDOWS = {
    'wheat': (
        StageWindow(11, 11, 'sowing'),
        StageWindow(12, 2, 'vegetative'),
        StageWindow(3, 3, 'reproductive'),
        StageWindow(4, 4, 'maturity'),
        StageWindow(5, 5, 'fallow'),
    ),
    'rice': (
        StageWindow(6, 6, 'sowing'),
        StageWindow(7, 8, 'vegetative'),
        StageWindow(9, 9, 'reproductive'),
        StageWindow(10, 10, 'maturity'),
    ),
    'maize': (
        StageWindow(6, 6, 'sowing'),
        StageWindow(7, 8, 'vegetative'),
        StageWindow(9, 9, 'reproductive'),
        StageWindow(10, 10, 'maturity'),
    ),
    'soybean': (
        StageWindow(6, 6, 'sowing'),
        StageWindow(7, 8, 'vegetative'),
        StageWindow(9, 9, 'reproductive'),
        StageWindow(10, 10, 'maturity'),
    ),
    'cotton': (
        StageWindow(5, 5, 'sowing'),
        StageWindow(6, 8, 'vegetative'),
        StageWindow(9, 10, 'reproductive'),
        StageWindow(11, 12, 'maturity'),
    ),
    'potato': (
        StageWindow(10, 10, 'sowing'),
        StageWindow(11, 12, 'vegetative'),
        StageWindow(1, 1, 'reproductive'),
        StageWindow(2, 2, 'maturity'),
    ),
    'sugarcane': (
        StageWindow(2, 3, 'sowing'),
        StageWindow(4, 9, 'vegetative'),
        StageWindow(10, 11, 'reproductive'),
        StageWindow(12, 1, 'maturity'),
    ),
}


class CropCalendar:
    """Injectable (crop type, month) -> crop stage table"""

    def __init__(self, windows=None, default_stage=DEFAULT_STAGE):
        self.windows = DEFAULT_WINDOWS if windows is None else windows
        self.default_stage = default_stage

    def stage_for(self, crop_type, analysis_date):
        month = analysis_date.month
        for window in self.windows.get(crop_type, ()):
            if window.contains(month):
                return window.stage
        return self.default_stage

    def is_bare_soil(self, stage):
        return stage in BARE_SOIL_STAGES
