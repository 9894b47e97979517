"""
Models for overall orchestration configuration.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel
from .service_definition import ServiceDefinition


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    name: Optional[str] = None
    services: Dict[str, ServiceDefinition]
    networks: List[str] = []
    volumes: List[str] = []

    def dependents_of(self, name: str) -> List[str]:
        """Services that declare a direct dependency on ``name``."""
        return [
            svc_name
            for svc_name, svc in self.services.items()
            if name in svc.dependency_names()
        ]
