from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from solders.keypair import Keypair

from countertrade.bot_runtime.settings import AppSettings, load_blacklist, parse_address_list
from countertrade.ingestion.types import JUPITER_V6_PROGRAM_ID, WSOL_MINT, CommitmentLevel
from countertrade.trading.types import ConfigError, parse_private_key


def _env(**overrides: str) -> dict[str, str]:
    env = {
        "PRIVATE_KEY": str(Keypair()),
        "RPC_ENDPOINT": "https://rpc.invalid",
        "STREAM_ENDPOINT": "wss://stream.invalid",
        "TRACKED_MINT": "TrackedMint1111111111111111111111111111111",
    }
    env.update(overrides)
    return env


class AppSettingsTests(unittest.TestCase):
    def test_defaults_are_applied(self) -> None:
        with patch.dict(os.environ, _env(), clear=True):
            settings = AppSettings.from_env()

        settings.validate()
        self.assertTrue(settings.dry_run)
        self.assertEqual(settings.commitment, CommitmentLevel.CONFIRMED)
        self.assertEqual(settings.quote_mint, WSOL_MINT)
        self.assertEqual(settings.max_sell_retries, 10)
        self.assertEqual(settings.sell_percentage_tiers, (50, 75, 25))
        self.assertEqual(settings.aggregator_program_ids, (JUPITER_V6_PROGRAM_ID,))
        self.assertEqual(settings.transaction_executor, "default")
        self.assertEqual(settings.minimum_trigger_raw, 0)
        self.assertEqual(settings.tip_lamports, 6_000_000)

    def test_overrides_are_parsed(self) -> None:
        env = _env(
            COMMITMENT_LEVEL="Finalized",
            TRANSACTION_EXECUTOR="JITO",
            MINIMUM_BUY_TRIGGER="0.05",
            AUTO_BUY_DELAY="250",
            LOW_SELL_AMOUNT="0",
            HIGH_SELL_AMOUNT="100",
            ONE_TOKEN_AT_A_TIME="false",
            DRY_RUN="0",
            AGGREGATOR_PROGRAM_IDS="RouterA, RouterB,,",
            MAX_INFLIGHT_ORDERS="4",
        )
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        settings.validate()
        self.assertEqual(settings.commitment, CommitmentLevel.FINALIZED)
        self.assertEqual(settings.transaction_executor, "jito")
        self.assertEqual(settings.minimum_trigger_raw, 50_000_000)
        self.assertEqual(settings.post_buy_delay_seconds, 0.25)
        self.assertEqual(settings.sell_percentage_tiers, (50, 100))
        self.assertFalse(settings.one_token_at_a_time)
        self.assertFalse(settings.dry_run)
        self.assertEqual(settings.aggregator_program_ids, ("RouterA", "RouterB"))
        self.assertEqual(settings.max_inflight_orders, 4)

    def test_validate_reports_every_problem(self) -> None:
        env = {
            "PRIVATE_KEY": "not-a-key",
            "COMMITMENT_LEVEL": "recent",
            "TRANSACTION_EXECUTOR": "warp",
            "MINIMUM_BUY_TRIGGER": "lots",
            "LOW_SELL_AMOUNT": "0",
            "AVG_SELL_AMOUNT": "0",
            "HIGH_SELL_AMOUNT": "0",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AppSettings.from_env()

        with self.assertRaises(ConfigError) as ctx:
            settings.validate()

        message = str(ctx.exception)
        for fragment in (
            "Unsupported PRIVATE_KEY format",
            "RPC_ENDPOINT",
            "STREAM_ENDPOINT",
            "TRACKED_MINT",
            "recent",
            "TRANSACTION_EXECUTOR",
            "SELL_AMOUNT",
            "MINIMUM_BUY_TRIGGER",
        ):
            with self.subTest(fragment=fragment):
                self.assertIn(fragment, message)

    def test_tiers_above_one_hundred_are_rejected(self) -> None:
        with patch.dict(os.environ, _env(HIGH_SELL_AMOUNT="150"), clear=True):
            settings = AppSettings.from_env()

        with self.assertRaises(ConfigError):
            settings.validate()

    def test_jito_requires_a_tip(self) -> None:
        with patch.dict(os.environ, _env(TRANSACTION_EXECUTOR="jito", CUSTOM_FEE="0", DRY_RUN="false"), clear=True):
            settings = AppSettings.from_env()

        with self.assertRaises(ConfigError) as ctx:
            settings.validate()
        self.assertIn("CUSTOM_FEE", str(ctx.exception))


class ConfigHelperTests(unittest.TestCase):
    def test_blacklist_skips_blanks_and_comments(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "blacklist.txt"
            path.write_text("# known bots\nBotA\n\n  BotB  # sandwich\n", encoding="utf-8")

            self.assertEqual(load_blacklist(str(path)), ("BotA", "BotB"))

    def test_missing_blacklist_is_a_config_error(self) -> None:
        self.assertEqual(load_blacklist(""), ())
        with self.assertRaises(ConfigError):
            load_blacklist("/nonexistent/blacklist.txt")

    def test_address_lists_and_private_keys(self) -> None:
        self.assertEqual(parse_address_list(None), ())
        self.assertEqual(parse_address_list(" a , b "), ("a", "b"))

        signer = Keypair()
        self.assertEqual(parse_private_key(str(signer)).pubkey(), signer.pubkey())
        self.assertEqual(parse_private_key(json.dumps(list(bytes(signer)))).pubkey(), signer.pubkey())
        with self.assertRaises(ValueError):
            parse_private_key("")


if __name__ == "__main__":
    unittest.main()
