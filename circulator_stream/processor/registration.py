"""
Agent Registration
==================

One-time registration of the agent with the configuration store at startup.
"""

import os
import platform
import socket
from typing import Dict, List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError

from circulator_stream.logging_utils import get_component_logger

logger = get_component_logger(__name__, "registration")

DEFAULT_CAPABILITIES = ["stream_processing", "anomaly_detection", "system_monitoring"]


class RegistrationError(Exception):
    """Registration request failed or was refused."""
    pass


class RegisterAgentRequest(BaseModel):
    uuid: str
    hostname: str
    ip_address: str = ""
    port: int = 0
    thread_count: int = 1
    max_thread_count: int = 1
    version: str = ""
    capabilities: List[str] = Field(default_factory=lambda: list(DEFAULT_CAPABILITIES))
    metadata: Dict[str, str] = Field(default_factory=dict)


class RegisterAgentResponse(BaseModel):
    code: str = ""
    message: str = ""
    agent_id: str = ""
    status: str = ""


def _local_address(hostname: str) -> str:
    try:
        return socket.gethostbyname(hostname)
    except OSError:
        return ""


class AgentRegistrar:
    """
    Registers an agent via POST {base_url}/agents/register.

    Args:
        base_url: Configuration store base URL
        timeout: HTTP timeout in seconds
        session: requests.Session (injected in tests)
    """

    def __init__(self, base_url: str, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def build_request(self, agent_uuid: str, version: str = "") -> RegisterAgentRequest:
        hostname = socket.gethostname()
        return RegisterAgentRequest(
            uuid=agent_uuid,
            hostname=hostname,
            ip_address=_local_address(hostname),
            max_thread_count=os.cpu_count() or 1,
            version=version,
            metadata={
                "os": platform.system().lower(),
                "arch": platform.machine(),
                "python": platform.python_version(),
            },
        )

    def register(self, agent_uuid: str, version: str = "") -> RegisterAgentResponse:
        """
        Raises:
            RegistrationError: Transport error, non-2xx status or bad body
        """
        request = self.build_request(agent_uuid, version)
        url = f"{self.base_url}/agents/register"

        logger.info("Registering agent", extra={"event": "registration_start", "agent_uuid": agent_uuid})

        try:
            response = self.session.post(url, json=request.model_dump(), timeout=self.timeout)
        except requests.RequestException as e:
            raise RegistrationError(f"Agent registration failed: {e}") from e

        if response.status_code not in (200, 201):
            raise RegistrationError(
                f"Registration refused (HTTP {response.status_code}): {response.text}"
            )

        try:
            result = RegisterAgentResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise RegistrationError(f"Invalid registration response: {e}") from e

        logger.info(
            "Agent registration successful",
            extra={"event": "registration_completed", "agent_id": result.agent_id, "status": result.status},
        )
        return result
