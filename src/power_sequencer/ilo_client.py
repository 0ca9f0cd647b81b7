"""
iLO Client module for Power Sequencer.

vCenter cannot power a host on once it has been shut down. This module
provides the IloClient class, which talks Redfish to a host's HPE iLO
management controller to press the power button again during startup.
"""

import logging
from typing import Optional

import redfish

logger = logging.getLogger("power-sequencer")

SYSTEMS_URI = "/redfish/v1/Systems"

# Redfish reports success for a reset action with any of these
RESET_ACCEPTED = (200, 202, 204)


class IloClient:
    """Redfish session against one iLO interface."""

    def __init__(self, host: str, username: str, password: str):
        self.host = host
        self.username = username
        self.password = password
        self.redfish_client = None
        self._system_uri: Optional[str] = None

    def connect(self) -> bool:
        """
        Open a Redfish session.

        Returns:
            True if the iLO accepted the login, False otherwise.
        """
        logger.info(f"Connecting to iLO interface at {self.host}")
        try:
            session = redfish.RedfishClient(
                base_url=f"https://{self.host}",
                username=self.username,
                password=self.password,
                default_prefix="/redfish/v1",
            )
            session.login()
        except Exception as e:
            logger.error(f"Failed to log in to iLO interface at {self.host}: {e}")
            return False
        self.redfish_client = session
        return True

    def disconnect(self) -> None:
        """Close the Redfish session, if one is open."""
        session, self.redfish_client = self.redfish_client, None
        self._system_uri = None
        if session is None:
            return
        try:
            session.logout()
        except Exception as e:
            logger.warning(f"Logout from iLO interface at {self.host} failed: {e}")
        else:
            logger.info(f"Disconnected from iLO interface at {self.host}")

    def _system(self) -> dict:
        if self._system_uri is None:
            members = self.redfish_client.get(SYSTEMS_URI).dict["Members"]
            self._system_uri = members[0]["@odata.id"]
        return self.redfish_client.get(self._system_uri).dict

    def power_state(self) -> Optional[str]:
        """Return the Redfish PowerState ("On", "Off", ...) or None if it cannot be read."""
        if not self.redfish_client:
            logger.error(f"Not connected to iLO interface at {self.host}")
            return None
        try:
            return self._system().get("PowerState")
        except Exception as e:
            logger.error(f"Error reading power state from {self.host}: {e}")
            return None

    def reset(self, reset_type: str) -> bool:
        """
        Invoke the ComputerSystem.Reset action.

        Args:
            reset_type: Redfish ResetType, e.g. "On" or "ForceOff".

        Returns:
            True if the iLO accepted the request.
        """
        if not self.redfish_client:
            logger.error(f"Not connected to iLO interface at {self.host}")
            return False
        try:
            target = self._system()["Actions"]["#ComputerSystem.Reset"]["target"]
            response = self.redfish_client.post(target, body={"ResetType": reset_type})
        except Exception as e:
            logger.error(f"Reset {reset_type} on {self.host} failed: {e}")
            return False

        if response.status not in RESET_ACCEPTED:
            logger.error(f"iLO at {self.host} rejected reset {reset_type}: {response.text}")
            return False
        return True

    def power_on(self) -> bool:
        """
        Power the server on unless it already is.

        Returns:
            True if the server is on or powering on, False otherwise.
        """
        if self.power_state() == "On":
            logger.info(f"Server at {self.host} is already powered on")
            return True

        logger.info(f"Powering on server at {self.host}")
        if not self.reset("On"):
            return False
        logger.info(f"Server at {self.host} is powering on")
        return True
