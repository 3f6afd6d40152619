from __future__ import annotations

from enum import Enum

from config import normalize_alarm_mode


class AlarmState(Enum):
    IDLE = "idle"
    ALARM = "alarm"


class AlarmMode(Enum):
    VISUAL = "visual"
    AUDIO = "audio"
    BOTH = "both"

    @classmethod
    def parse(cls, value) -> "AlarmMode":
        if isinstance(value, AlarmMode):
            return value
        return cls(normalize_alarm_mode(value))

    @property
    def hasVisual(self) -> bool:
        return self in (AlarmMode.VISUAL, AlarmMode.BOTH)

    @property
    def hasAudio(self) -> bool:
        return self in (AlarmMode.AUDIO, AlarmMode.BOTH)


class AlarmStateMachine:
    """
    Two-state alarm (idle / alarm) driving two alert channels.

    The machine only flips booleans; whoever renders the overlay or plays the
    sound polls `visualActive` / `audioActive`.
    """

    def __init__(self, mode=AlarmMode.BOTH):
        self.mode = AlarmMode.parse(mode)
        self.state = AlarmState.IDLE
        self.visualActive = False
        self.audioActive = False

    @property
    def isAlarm(self) -> bool:
        return self.state is AlarmState.ALARM

    def evaluate(self, motionScore: float, threshold: float) -> bool:
        """Returns True only on the idle -> alarm transition."""
        if self.isAlarm:
            return False
        if not motionScore > threshold:
            return False

        self.state = AlarmState.ALARM
        self._applyChannels()
        return True

    def clear(self) -> bool:
        if not self.isAlarm and not (self.visualActive or self.audioActive):
            return False
        self.state = AlarmState.IDLE
        self.visualActive = False
        self.audioActive = False
        return True

    def setMode(self, mode) -> AlarmMode:
        self.mode = AlarmMode.parse(mode)
        if self.isAlarm:
            self._applyChannels()
        return self.mode

    def _applyChannels(self):
        self.visualActive = self.mode.hasVisual
        self.audioActive = self.mode.hasAudio
