"""
Models for supervised programs.
"""
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel


class AutoRestart(str, Enum):
    """
    When a program that exited after a successful start is restarted.
    """
    ALWAYS = "true"
    NEVER = "false"
    UNEXPECTED = "unexpected"


class ProgramDefinition(BaseModel):
    """
    A long-running worker process, as declared in a ``[program:x]`` section.
    """
    name: str
    command: List[str]
    directory: Optional[str] = None
    user: Optional[str] = None
    environment: Dict[str, str] = {}
    autostart: bool = True
    autorestart: AutoRestart = AutoRestart.UNEXPECTED
    exitcodes: List[int] = [0]
    startsecs: float = 1.0
    startretries: int = 3
    stopwaitsecs: float = 10.0
    priority: int = 999


class SupervisorConfig(BaseModel):
    """
    All programs managed by one supervisor.
    """
    programs: Dict[str, ProgramDefinition] = {}

    def ordered(self) -> List[ProgramDefinition]:
        """Programs in start order (lowest priority first)."""
        return sorted(self.programs.values(), key=lambda p: (p.priority, p.name))
