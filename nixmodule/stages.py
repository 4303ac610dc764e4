"""stages.py.

Pipeline stages of one kernel and how far a kernel got through them.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Dict, Optional

from nixmodule.errors import ExitStatus


class Stage(IntEnum):
    """Pipeline progress, in order."""

    NOT_STARTED = 0
    BUILT = 1
    DEPLOYED = 2
    LOADED = 3
    TESTED = 4


class StageStatus:
    """Report cell values."""

    OK = "Ok"
    FAILED = "Failed"
    NOT_ATTEMPTED = "N/A"


# Report column -> stage that has to be reached for the column to be Ok
REPORT_COLUMNS = (
    ("build", Stage.BUILT),
    ("insmod", Stage.LOADED),
    ("test", Stage.TESTED),
)


@dataclass(frozen=True)
class StageFailure:
    """Failure to reach ``stage``, with the error that caused it."""

    cause: Exception
    stage: ClassVar[Stage]
    exit_status: ClassVar[ExitStatus]

    def __str__(self) -> str:
        return f"{self.stage.name.lower()} stage failed: {self.cause}"


@dataclass(frozen=True)
class BuildFailure(StageFailure):
    """The module did not build."""

    stage = Stage.BUILT
    exit_status = ExitStatus.BUILD_ERROR


@dataclass(frozen=True)
class DeployFailure(StageFailure):
    """The module could not be copied into the guest."""

    stage = Stage.DEPLOYED
    exit_status = ExitStatus.INSMOD_ERROR


@dataclass(frozen=True)
class LoadFailure(StageFailure):
    """insmod failed in the guest."""

    stage = Stage.LOADED
    exit_status = ExitStatus.INSMOD_ERROR


@dataclass(frozen=True)
class TestFailure(StageFailure):
    """The test files could not be staged or the test script failed."""

    stage = Stage.TESTED
    exit_status = ExitStatus.TEST_ERROR


@dataclass
class StageOutcome:
    """Last stage reached and the failure that stopped the pipeline, if any."""

    reached: Stage = Stage.NOT_STARTED
    failure: Optional[StageFailure] = None

    @property
    def exit_status(self) -> ExitStatus:
        """Exit status this outcome contributes to the run."""
        return self.failure.exit_status if self.failure else ExitStatus.SUCCESS

    def columns(self) -> Dict[str, str]:
        """Report cells for this outcome.

        Columns whose stage was reached are Ok. When the pipeline failed,
        the first unreached column is Failed. Everything after that was not
        attempted.
        """
        cells = {}
        failure_reported = self.failure is None
        for column, stage in REPORT_COLUMNS:
            if self.reached >= stage:
                cells[column] = StageStatus.OK
            elif not failure_reported:
                cells[column] = StageStatus.FAILED
                failure_reported = True
            else:
                cells[column] = StageStatus.NOT_ATTEMPTED
        return cells
