"""
The ``smaug`` RPC method: subcommand dispatch and parameter parsing.

``add`` takes its parameters either positionally
(``descriptor [change_descriptor [birthday [gap]]]``) or by name
(``{"descriptor": ..., "change_descriptor": ..., "birthday": ..., "gap": ...}``).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from smaug.errors import (
    InvalidBirthday,
    InvalidChangeDescriptorParam,
    InvalidDescriptorParam,
    InvalidFormat,
    InvalidGap,
    InvalidRequest,
)
from smaug.service import SmaugService

SUBCOMMANDS = ("ls", "add", "remove", "status")
ADD_PARAM_NAMES = ("descriptor", "change_descriptor", "birthday", "gap")

USAGE = (
    "Usage: smaug ls | smaug add <descriptor> [change_descriptor] [birthday] [gap] | "
    "smaug remove <name> | smaug status"
)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _as_uint(value: Any) -> int | None:
    """Non-negative integer value, or None if ``value`` is not one."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


@dataclass
class AddRequest:
    """Parsed ``add`` parameters."""

    descriptor: str
    change_descriptor: str | None = None
    birthday: int | None = None
    gap: int | None = None

    @classmethod
    def from_values(
        cls,
        descriptor: Any,
        change_descriptor: Any = None,
        birthday: Any = None,
        gap: Any = None,
    ) -> AddRequest:
        if not isinstance(descriptor, str):
            raise InvalidDescriptorParam(
                f"Unexpected request format. Expected descriptor to be a string, "
                f"found {_type_name(descriptor)}"
            )
        if change_descriptor is not None and not isinstance(change_descriptor, str):
            raise InvalidChangeDescriptorParam(
                f"change_descriptor must be a string. Received: {change_descriptor}"
            )

        parsed_birthday = None
        if birthday is not None:
            parsed_birthday = _as_uint(birthday)
            if parsed_birthday is None:
                raise InvalidBirthday(f"birthday must be a number. Received: {birthday}")

        parsed_gap = None
        if gap is not None:
            parsed_gap = _as_uint(gap)
            if parsed_gap is None:
                raise InvalidGap(f"gap must be a number. Received: {gap}")

        return cls(
            descriptor=descriptor,
            change_descriptor=change_descriptor or None,
            birthday=parsed_birthday,
            gap=parsed_gap,
        )

    @classmethod
    def from_params(cls, params: Any) -> AddRequest:
        """
        Parse positional or named ``add`` parameters.

        Raises:
            InvalidRequest: If the parameters are malformed
        """
        if isinstance(params, (list, tuple)):
            if not 1 <= len(params) <= len(ADD_PARAM_NAMES):
                raise InvalidFormat(
                    "Unexpected request format. The request needs 1-4 parameters. "
                    f"Received: {len(params)}"
                )
            return cls.from_values(*params)

        if isinstance(params, dict):
            if not 1 <= len(params) <= len(ADD_PARAM_NAMES):
                raise InvalidFormat(
                    "Unexpected request format. The request needs 1-4 parameters. "
                    f"Received: {len(params)}"
                )
            if "descriptor" not in params:
                raise InvalidDescriptorParam("descriptor is mandatory")
            unknown = [key for key in params if key not in ADD_PARAM_NAMES]
            if unknown:
                raise InvalidFormat(
                    "Invalid named parameter found in request. Allowed named params: "
                    "['descriptor', 'change_descriptor', 'birthday', 'gap']"
                )
            return cls.from_values(**params)

        raise InvalidFormat(
            "Unexpected request format. Expected: <descriptor>, "
            "[change_descriptor, birthday, gap], either as ordered or keyword args. "
            f"Received: '{params}'"
        )


def _remove_name(params: Any) -> str:
    if isinstance(params, dict):
        params = [params["name"]] if "name" in params else []
    if not isinstance(params, (list, tuple)) or len(params) != 1:
        raise InvalidFormat("Unexpected request format. remove takes exactly one wallet name")
    name = params[0]
    if not isinstance(name, str):
        raise InvalidFormat(
            f"Unexpected request format. Expected name to be a string, found {_type_name(name)}"
        )
    return name


async def dispatch(service: SmaugService, command: str, params: Any = None) -> Any:
    """
    Run one ``smaug`` subcommand.

    Args:
        service: Running service
        command: Subcommand name (``ls``, ``add``, ``remove``, ``status``)
        params: Remaining request parameters

    Returns:
        The subcommand result

    Raises:
        InvalidRequest: On unknown subcommands or malformed parameters
        SmaugError: On operation failures
    """
    if command == "ls":
        return service.list()
    if command == "add":
        request = AddRequest.from_params(params if params is not None else [])
        return await service.add(
            request.descriptor,
            request.change_descriptor,
            request.birthday,
            request.gap,
        )
    if command == "remove":
        return await service.remove(_remove_name(params if params is not None else []))
    if command == "status":
        return service.status()
    raise InvalidRequest(f"Unknown subcommand '{command}'. {USAGE}")
