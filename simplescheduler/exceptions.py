#  Copyright 2020 Cognite AS
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.

"""
Exceptions raised by the scheduler.
"""


class InvalidConfigError(Exception):
    """
    Exception thrown from ``load_file``, ``load_io`` and ``load_dict`` if a config is invalid. This can be due to

      * Missing fields
      * Incompatible types
      * Unknown fields
    """

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__()
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"Invalid config: {self.message}"

    def __repr__(self) -> str:
        return self.__str__()


class InvalidEventError(ValueError):
    """
    Exception thrown when an event is rejected by the scheduler, for example a weekly event without any days or an
    event added to the wrong category.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"Invalid event: {self.message}"


class NoStatePathError(ValueError):
    """
    Exception thrown when saving or loading scheduler state without a path, and no state file is configured.
    """

    def __init__(self) -> None:
        super().__init__("No state file given, and the scheduler has no state file configured")


class StateLoadError(Exception):
    """
    Exception thrown when a state file exists but can not be parsed into scheduler state.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Could not load scheduler state from {path}: {reason}")
        self.path = path
        self.reason = reason
