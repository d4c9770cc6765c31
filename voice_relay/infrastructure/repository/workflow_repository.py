from typing import Dict, List, Any, Optional
import json
import os
import structlog

from voice_relay.domain.errors import ConfigurationError
from voice_relay.domain.models.workflow import Workflow

logger = structlog.get_logger(__name__)


class JsonWorkflowRepository:
    """Workflow lookup backed by a JSON export of the workflow store.

    The file holds a list of workflows, each with agent_id, is_active, nodes
    and edges. Definitions are parsed once and shared read-only by every
    session of the agent.
    """

    def __init__(self, path: str):
        self.path = path
        self._definitions: Optional[List[Dict[str, Any]]] = None
        self._parsed: Dict[str, Workflow] = {}

    def _load(self) -> List[Dict[str, Any]]:
        if self._definitions is None:
            if not os.path.exists(self.path):
                logger.warning("Workflow file not found", path=self.path)
                self._definitions = []
            else:
                try:
                    with open(self.path, "r") as f:
                        data = json.load(f)
                except json.JSONDecodeError as e:
                    raise ConfigurationError(f"Workflow file {self.path} is not valid JSON: {e}") from e
                self._definitions = data if isinstance(data, list) else [data]
        return self._definitions

    async def get_active_workflow(self, agent_id: str) -> Optional[Workflow]:
        """First active workflow registered for the agent"""

        if agent_id in self._parsed:
            return self._parsed[agent_id]

        for definition in self._load():
            if str(definition.get("agent_id")) == str(agent_id) and definition.get("is_active", True):
                workflow = Workflow.from_definition(definition)
                self._parsed[agent_id] = workflow
                logger.info("Workflow loaded", agent_id=agent_id, workflow_id=workflow.id,
                            nodes=len(workflow.nodes), edges=len(workflow.edges))
                return workflow

        return None


class InMemoryWorkflowRepository:
    """Workflow lookup over definitions held in memory"""

    def __init__(self, workflows: Optional[Dict[str, Workflow]] = None):
        self.workflows: Dict[str, Workflow] = dict(workflows or {})

    def add(self, agent_id: str, workflow: Workflow):
        self.workflows[agent_id] = workflow

    async def get_active_workflow(self, agent_id: str) -> Optional[Workflow]:
        return self.workflows.get(agent_id)
