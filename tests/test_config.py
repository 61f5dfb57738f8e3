import io
import logging
import unittest

from loguru import logger

from chatrelay.config import (
    DEFAULT_MAX_MSG_SIZE,
    ENV_DB_PATH,
    ENV_LOG_LEVEL,
    ENV_PING_INTERVAL_S,
    ENV_PORT,
    ServerConfig,
    load_config_from_env,
)
from chatrelay.log_config import configure_logging


class ConfigTests(unittest.TestCase):
    def test_defaults_when_env_empty(self):
        config = load_config_from_env({})

        self.assertEqual(config, ServerConfig())
        self.assertEqual(config.max_msg_size, DEFAULT_MAX_MSG_SIZE)
        self.assertIsNone(config.db_path)

    def test_env_overrides(self):
        config = load_config_from_env(
            {ENV_PORT: "9000", ENV_DB_PATH: "/tmp/chat.db", ENV_PING_INTERVAL_S: "5", ENV_LOG_LEVEL: "debug"}
        )

        self.assertEqual(config.port, 9000)
        self.assertEqual(config.db_path, "/tmp/chat.db")
        self.assertEqual(config.ping_interval_s, 5)
        self.assertEqual(config.log_level, "DEBUG")

    def test_invalid_values_name_the_variable(self):
        with self.assertRaisesRegex(ValueError, ENV_PORT):
            load_config_from_env({ENV_PORT: "eighty"})
        with self.assertRaisesRegex(ValueError, ENV_PING_INTERVAL_S):
            load_config_from_env({ENV_PING_INTERVAL_S: "0"})
        with self.assertRaisesRegex(ValueError, ENV_LOG_LEVEL):
            load_config_from_env({ENV_LOG_LEVEL: "chatty"})


class LoggingTests(unittest.TestCase):
    def tearDown(self) -> None:
        logger.remove()
        logging.basicConfig(handlers=[logging.NullHandler()], force=True)

    def test_stdlib_records_reach_loguru_sink(self):
        sink = io.StringIO()
        configure_logging("INFO", sink=sink)

        logging.getLogger("relay.sample").warning("dropping %s", "newMessage")
        logging.getLogger("relay.sample").debug("too quiet")

        output = sink.getvalue()
        self.assertIn("dropping newMessage", output)
        self.assertIn("relay.sample", output)
        self.assertNotIn("too quiet", output)


if __name__ == "__main__":
    unittest.main()
