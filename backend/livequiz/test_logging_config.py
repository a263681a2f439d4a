from __future__ import annotations

import logging
from unittest import TestCase, mock

from . import recorder, timers
from .logging_config import configure_logging


class ConfigureLoggingTests(TestCase):
    def test_returns_parent_of_module_loggers(self):
        with mock.patch.object(logging, "basicConfig") as basic_config:
            logger = configure_logging("debug")

        basic_config.assert_called_once()
        self.assertEqual(basic_config.call_args.kwargs["level"], logging.DEBUG)
        for module_logger in (timers.logger, recorder.logger):
            self.assertTrue(module_logger.name.startswith(logger.name + "."), module_logger.name)

    def test_unknown_level_falls_back_to_info(self):
        with mock.patch.object(logging, "basicConfig") as basic_config:
            configure_logging("chatty")

        self.assertEqual(basic_config.call_args.kwargs["level"], logging.INFO)
