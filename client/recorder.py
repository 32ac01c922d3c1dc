from __future__ import annotations
from concurrent.futures import Future
from enum import Enum
from typing import Dict, List, Optional

from client.connection import Connection
from shared.envelope import RequestResponse
from shared.log import get_logger

logger = get_logger(__name__)


class RecordRequest(str, Enum):
    """Record-output requests that take no requestData."""
    START = "StartRecord"
    STOP = "StopRecord"
    TOGGLE = "ToggleRecord"
    PAUSE = "PauseRecord"
    RESUME = "ResumeRecord"
    TOGGLE_PAUSE = "ToggleRecordPause"

    @classmethod
    def from_string(cls, value: str) -> RecordRequest:
        """Accept either the request name ("StartRecord") or the short form ("start")."""
        for member in cls:
            if value == member.value or value.lower() == member.name.lower().replace("_", "-") \
                    or value.lower() == member.name.lower():
                return member
        raise ValueError(f"Unknown record request: {value}")


class Recorder:
    """
    Recording controls on top of a Connection.

    Every method returns the request future(s) from Connection.send_request,
    so the caller decides whether to wait.
    """

    def __init__(self, connection: Connection):
        self.connection = connection

    def record(self, request: RecordRequest) -> "Future[RequestResponse]":
        logger.info(f"Record request: {request.value}")
        return self.connection.send_request(request.value)

    def start(self) -> "Future[RequestResponse]":
        return self.record(RecordRequest.START)

    def stop(self) -> "Future[RequestResponse]":
        return self.record(RecordRequest.STOP)

    def toggle_input_mute(self, input_name: str) -> "Future[RequestResponse]":
        return self.connection.send_request("ToggleInputMute", {"inputName": input_name})

    def get_profile_parameter(self, category: str, name: str) -> "Future[RequestResponse]":
        return self.connection.send_request(
            "GetProfileParameter",
            {"parameterCategory": category, "parameterName": name},
        )

    def set_profile_parameter(self, category: str, name: str, value: str) -> "Future[RequestResponse]":
        return self.connection.send_request(
            "SetProfileParameter",
            {"parameterCategory": category, "parameterName": name, "parameterValue": value},
        )

    def set_record_directory(self, directory: str, file_name: str) -> List["Future[RequestResponse]"]:
        """
        Point simple-output recordings at directory, named by file_name.

        Two SetProfileParameter requests: the path lives under the
        "SimpleOutput" category, the filename format under "Output".
        """
        return [
            self.set_profile_parameter("SimpleOutput", "FilePath", directory),
            self.set_profile_parameter("Output", "FilenameFormatting", file_name),
        ]

    def get(self, request_type: str, fields: Optional[Dict[str, str]] = None) -> "Future[RequestResponse]":
        """Any request by name, e.g. get("GetRecordStatus")."""
        return self.connection.send_request(request_type, fields or {})
