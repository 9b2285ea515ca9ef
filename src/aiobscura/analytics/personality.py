"""
Coding personality archetypes for the wrapped report.

Classification is a pure function of a ``UsageProfile``: every archetype
gets a score in [0, 1] and the highest wins. Ties go to the archetype
listed first.
"""

import enum
from dataclasses import dataclass
from typing import Any


class Personality(str, enum.Enum):
    ARCHAEOLOGIST = "archaeologist"  # Reads far more than it edits
    DELEGATOR = "delegator"  # Spawns many sub-agents
    PHILOSOPHER = "philosopher"  # Long sessions, few edits
    SPRINTER = "sprinter"  # Short sessions, many edits
    TERMINAL_DWELLER = "terminal_dweller"  # Heavy Bash usage
    ARCHITECT = "architect"  # Plans before building
    NIGHT_OWL = "night_owl"  # 10pm-4am activity
    EARLY_BIRD = "early_bird"  # 5am-9am activity
    EXPLORER = "explorer"  # Many projects
    DEEP_DIVER = "deep_diver"  # One dominant project

    @property
    def display_name(self) -> str:
        return _DISPLAY[self][0]

    @property
    def tagline(self) -> str:
        return _DISPLAY[self][1]

    @property
    def emoji(self) -> str:
        return _DISPLAY[self][2]


_DISPLAY = {
    Personality.ARCHAEOLOGIST: ("The Archaeologist", "You love exploring before changing", "🔍"),
    Personality.DELEGATOR: ("The Delegator", "Why do it yourself when agents can help?", "👥"),
    Personality.PHILOSOPHER: ("The Philosopher", "You think deeply before acting", "🤔"),
    Personality.SPRINTER: ("The Sprinter", "Quick iterations are your style", "⚡"),
    Personality.TERMINAL_DWELLER: ("The Terminal Dweller", "Command line is your home", "💻"),
    Personality.ARCHITECT: ("The Architect", "You plan before you build", "📐"),
    Personality.NIGHT_OWL: ("The Night Owl", "Your best code happens after midnight", "🦉"),
    Personality.EARLY_BIRD: ("The Early Bird", "Dawn is your productive time", "🐦"),
    Personality.EXPLORER: ("The Explorer", "Variety is the spice of code", "🧭"),
    Personality.DEEP_DIVER: ("The Deep Diver", "Focused dedication", "🤿"),
}


def _above(value: float, floor: float, span: float) -> float:
    """Linear ramp from 0 at ``floor`` to 1 at ``floor + span``."""
    if value <= floor:
        return 0.0
    return min((value - floor) / span, 1.0)


@dataclass
class UsageProfile:
    read_to_edit_ratio: float = 0.0
    agent_spawn_rate: float = 0.0  # agent threads per session
    avg_session_duration_secs: float = 0.0
    edits_per_session: float = 0.0
    bash_percentage: float = 0.0  # of all tool calls
    plans_per_session: float = 0.0
    late_night_percentage: float = 0.0  # 22:00-04:00 share of messages
    early_morning_percentage: float = 0.0  # 05:00-09:00 share of messages
    project_diversity: float = 0.0  # unique projects per session
    top_project_concentration: float = 0.0  # share of sessions on the top project

    @classmethod
    def from_counts(cls, inputs: dict[str, Any]) -> "UsageProfile":
        """
        Build a profile from ``StatsRepository.wrapped_usage_inputs`` output.

        Denominators are floored at 1 so an empty period yields a zero profile.
        """
        sessions = max(inputs["sessions"], 1)
        total_tools = max(inputs["total_tools"], 1)
        hourly = inputs["hourly"]
        activity = max(sum(hourly), 1)
        late_night = sum(hourly[22:24]) + sum(hourly[0:4])
        early_morning = sum(hourly[5:9])
        edits = inputs["edit_count"]
        reads = inputs["read_count"]
        return cls(
            read_to_edit_ratio=reads / edits if edits > 0 else float(reads),
            agent_spawn_rate=inputs["agents"] / sessions,
            avg_session_duration_secs=inputs["avg_session_duration_secs"],
            edits_per_session=edits / sessions,
            bash_percentage=inputs["bash_count"] / total_tools,
            plans_per_session=inputs["plans"] / sessions,
            late_night_percentage=late_night / activity,
            early_morning_percentage=early_morning / activity,
            project_diversity=inputs["unique_projects"] / sessions,
            top_project_concentration=inputs["top_project_sessions"] / sessions,
        )

    def scores(self) -> dict[Personality, float]:
        duration_hours = self.avg_session_duration_secs / 3600
        philosopher = (
            min(duration_hours, 2.0) / 2.0 * 0.6
            + (1.0 - self.edits_per_session / 10.0 if self.edits_per_session < 10 else 0.0) * 0.4
        )
        short = (
            1.0 - self.avg_session_duration_secs / 1800.0
            if self.avg_session_duration_secs < 1800
            else 0.0
        )
        sprinter = short * 0.4 + min(self.edits_per_session / 50.0, 1.0) * 0.6
        return {
            Personality.ARCHAEOLOGIST: _above(self.read_to_edit_ratio, 2.0, 5.0),
            Personality.DELEGATOR: _above(self.agent_spawn_rate, 0.5, 2.0),
            Personality.PHILOSOPHER: philosopher,
            Personality.SPRINTER: sprinter,
            Personality.TERMINAL_DWELLER: _above(self.bash_percentage, 0.15, 0.35),
            Personality.ARCHITECT: _above(self.plans_per_session, 0.1, 0.4),
            Personality.NIGHT_OWL: _above(self.late_night_percentage, 0.2, 0.3),
            Personality.EARLY_BIRD: _above(self.early_morning_percentage, 0.2, 0.3),
            Personality.EXPLORER: _above(self.project_diversity, 0.3, 0.4),
            Personality.DEEP_DIVER: _above(self.top_project_concentration, 0.6, 0.3),
        }

    def classify(self) -> Personality:
        scores = self.scores()
        # max() keeps the first of equal scores, i.e. declaration order
        return max(scores, key=lambda p: scores[p])
