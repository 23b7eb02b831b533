"""
Tests for output location and bounded polling.
"""

import logging
from unittest.mock import MagicMock

from comfy_splice.exceptions import ExecutorConnectionError
from comfy_splice.outputs import (
    TIMED_OUT_MESSAGE,
    FilenameCheckStrategy,
    HistoryStrategy,
    OutputLocator,
    OutputRef,
    RetrievalStatus,
    candidate_filenames,
    timestamped_prefix,
    wait_for_output,
)


def _no_sleep(seconds):
    pass


class TestFilenames:
    def test_timestamped_prefix(self):
        assert timestamped_prefix("comfy", 1700000000) == "comfy_1700000000"

    def test_candidates_without_timestamp(self):
        assert candidate_filenames("comfy_1") == [
            "comfy_1.png",
            "comfy_1_00001.png",
            "comfy_1_00001_.png",
        ]

    def test_candidates_with_timestamp(self):
        assert candidate_filenames("p", 5)[0] == "p_5.png"


class TestHistoryStrategy:
    def test_first_image(self):
        client = MagicMock()
        client.get_history.return_value = {
            "job": {
                "outputs": {
                    "8": {"text": ["ignored"]},
                    "9": {
                        "images": [
                            {"filename": "out_00001_.png", "subfolder": "", "type": "output"}
                        ]
                    },
                }
            }
        }
        found = HistoryStrategy(client).resolve("job")
        assert found == OutputRef("out_00001_.png", "", "output", source="history")

    def test_unknown_job(self):
        client = MagicMock()
        client.get_history.return_value = {}
        assert HistoryStrategy(client).resolve("job") is None

    def test_failure_is_a_miss(self):
        client = MagicMock()
        client.get_history.side_effect = ExecutorConnectionError("down")
        assert HistoryStrategy(client).resolve("job") is None


class TestFilenameCheck:
    def test_subfolder_split_from_prefix(self):
        client = MagicMock()
        client.output_exists.side_effect = lambda name, sub, kind: name.endswith("_00001_.png")

        found = FilenameCheckStrategy(client, "renders/comfy_17").resolve("job")

        assert found.filename == "comfy_17_00001_.png"
        assert found.subfolder == "renders"
        assert client.output_exists.call_count == 3

    def test_nothing_found(self):
        client = MagicMock()
        client.output_exists.return_value = False
        assert FilenameCheckStrategy(client, "x").resolve("job") is None


class TestLocator:
    def test_first_strategy_wins(self):
        first, second = MagicMock(), MagicMock()
        first.resolve.return_value = OutputRef("a.png")
        second.resolve.return_value = OutputRef("b.png")

        assert OutputLocator([first, second]).locate("job").filename == "a.png"
        second.resolve.assert_not_called()

    def test_falls_through(self):
        first, second = MagicMock(), MagicMock()
        first.resolve.return_value = None
        second.resolve.return_value = OutputRef("b.png")
        assert OutputLocator([first, second]).locate("job").filename == "b.png"


class TestWaitForOutput:
    def test_found_after_retries(self):
        strategy = MagicMock()
        strategy.resolve.side_effect = [None, None, OutputRef("a.png")]

        outcome = wait_for_output(
            OutputLocator([strategy]), "job", max_attempts=5, delay=0, sleep=_no_sleep
        )

        assert outcome.found
        assert outcome.attempts == 3
        assert outcome.output.filename == "a.png"

    def test_timed_out(self):
        strategy = MagicMock()
        strategy.resolve.return_value = None
        sleeps = []

        outcome = wait_for_output(
            OutputLocator([strategy]), "job", max_attempts=4, delay=2.0, sleep=sleeps.append
        )

        assert outcome.status is RetrievalStatus.TIMED_OUT
        assert outcome.message == TIMED_OUT_MESSAGE
        assert outcome.attempts == 4
        assert len(sleeps) == 3

    def test_found_record_names_output(self, caplog):
        """The success log record carries the output filename."""
        strategy = MagicMock()
        strategy.resolve.return_value = OutputRef("x_00001_.png")

        with caplog.at_level(logging.INFO, logger="comfy_splice.outputs"):
            wait_for_output(OutputLocator([strategy]), "job-1234abcd", max_attempts=1, delay=0)

        (record,) = [
            r for r in caplog.records
            if r.name == "comfy_splice.outputs" and r.levelno == logging.INFO
        ]
        assert record.output_filename == "x_00001_.png"
        assert record.prompt_id == "job-1234"
