from __future__ import annotations

import base64
import json
import logging
import struct
import unittest

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from countertrade.ingestion.decoder import TransactionDecoder
from countertrade.ingestion.types import (
    AccountFilter,
    AccountRecord,
    DataSlice,
    DecodedInstruction,
    DecodeError,
    StreamFilter,
    SubscriptionAck,
    TransactionFilter,
)
from countertrade.trading.executor import build_swap_base_in_instruction
from stream_frames import make_pool_keys, signed_transaction, token_balance, transaction_frame

TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def _swap_transaction(payer: Keypair, *, amount_in: int = 500, min_out: int = 400):
    keys = make_pool_keys()
    instruction = build_swap_base_in_instruction(
        keys,
        amount_in=amount_in,
        min_amount_out=min_out,
        source_account=Pubkey.new_unique(),
        destination_account=Pubkey.new_unique(),
        owner=payer.pubkey(),
    )
    return keys, signed_transaction(payer, [instruction])


class TransactionDecoderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.decoder = TransactionDecoder(logger=logging.getLogger("test.decoder"))

    def test_swap_base_in_is_decoded_with_pool_and_owner(self) -> None:
        payer = Keypair()
        keys, tx = _swap_transaction(payer, amount_in=1_234, min_out=1_000)

        decoded = self.decoder.decode(transaction_frame(tx))

        self.assertIsNotNone(decoded)
        assert decoded is not None
        self.assertEqual(decoded.fee_payer, str(payer.pubkey()))
        self.assertEqual(decoded.signature, str(tx.signatures[0]))
        swaps = self.decoder.swap_instructions(decoded)
        self.assertEqual(len(swaps), 1)
        self.assertEqual(swaps[0].variant, "swap_base_in")
        self.assertEqual(swaps[0].pool_id, keys.pool_id)
        self.assertEqual(swaps[0].owner, str(payer.pubkey()))
        self.assertEqual((swaps[0].amount_in, swaps[0].amount_out), (1_234, 1_000))

    def test_failed_transaction_produces_nothing(self) -> None:
        payer = Keypair()
        _, tx = _swap_transaction(payer)

        frame = transaction_frame(tx, meta={"err": {"InstructionError": [0, {"Custom": 30}]}})

        self.assertIsNone(self.decoder.decode(frame))

    def test_inner_instructions_follow_their_outer_instruction(self) -> None:
        payer = Keypair()
        _, tx = _swap_transaction(payer)
        static_count = len(tx.message.account_keys)
        inner_data = bytes([3]) + struct.pack("<Q", 77)
        meta = {
            "loadedAddresses": {"writable": [], "readonly": [TOKEN_PROGRAM]},
            "innerInstructions": [
                {
                    "index": 0,
                    "instructions": [
                        {
                            "programIdIndex": static_count,
                            "accounts": [0, 1],
                            "data": base58.b58encode(inner_data).decode("ascii"),
                            "stackHeight": 2,
                        }
                    ],
                }
            ],
        }

        decoded = self.decoder.decode(transaction_frame(tx, meta=meta))

        assert decoded is not None
        self.assertEqual(decoded.account_keys[-1], TOKEN_PROGRAM)
        self.assertEqual([ix.outer_index for ix in decoded.instructions], [0, 0])
        self.assertFalse(decoded.instructions[0].is_inner)
        self.assertTrue(decoded.instructions[1].is_inner)
        self.assertEqual(decoded.instructions[1].program_id, TOKEN_PROGRAM)
        self.assertEqual(decoded.instructions[1].data, inner_data)

    def test_inner_entries_without_stack_height_count_as_inner(self) -> None:
        payer = Keypair()
        _, tx = _swap_transaction(payer)
        meta = {"innerInstructions": [{"index": 0, "instructions": [{"programIdIndex": 0, "accounts": [], "data": ""}]}]}

        decoded = self.decoder.decode(transaction_frame(tx, meta=meta))

        assert decoded is not None
        self.assertFalse(decoded.instructions[0].is_inner)
        self.assertEqual(decoded.instructions[1].stack_height, 2)
        self.assertTrue(decoded.instructions[1].is_inner)

    def test_malformed_transaction_meta_raises_decode_error(self) -> None:
        payer = Keypair()
        _, tx = _swap_transaction(payer)
        metas = [
            {"innerInstructions": [{"index": 0, "instructions": [{"accounts": [0], "data": "3"}]}]},
            {"innerInstructions": [{"index": 0, "instructions": [{"programIdIndex": "x", "data": "3"}]}]},
            {"innerInstructions": [{"index": 0, "instructions": [{"programIdIndex": 0, "accounts": 5}]}]},
            {"innerInstructions": [{"index": 0, "instructions": [{"programIdIndex": -1}]}]},
            {"innerInstructions": [{"index": 0, "instructions": ["not-an-object"]}]},
            {"innerInstructions": [{"index": "first", "instructions": []}]},
            {"innerInstructions": 7},
            {"loadedAddresses": {"writable": 3}},
            {"preTokenBalances": [{"accountIndex": 1, "uiTokenAmount": {"amount": "1", "decimals": "six"}}]},
        ]
        for meta in metas:
            with self.subTest(meta=meta):
                with self.assertRaises(DecodeError):
                    self.decoder.decode(transaction_frame(tx, meta=meta))

        frame = json.loads(transaction_frame(tx))
        frame["params"]["result"]["slot"] = "latest"
        with self.assertRaises(DecodeError):
            self.decoder.decode(json.dumps(frame).encode())

    def test_token_balances_are_resolved_against_account_keys(self) -> None:
        payer = Keypair()
        _, tx = _swap_transaction(payer)
        mint = str(Pubkey.new_unique())
        meta = {
            "preTokenBalances": [token_balance(index=1, mint=mint, owner="pool-owner", amount=10)],
            "postTokenBalances": [token_balance(index=1, mint=mint, owner="pool-owner", amount=7)],
        }

        decoded = self.decoder.decode(transaction_frame(tx, meta=meta))

        assert decoded is not None
        self.assertEqual(decoded.pre_token_balances[0].account, decoded.account_keys[1])
        self.assertEqual(decoded.pre_token_balances[0].amount, 10)
        self.assertEqual(decoded.post_token_balances[0].amount, 7)

    def test_malformed_frames_raise_decode_error(self) -> None:
        frames = [
            b"not json",
            b"[1, 2, 3]",
            json.dumps({"jsonrpc": "2.0", "method": "slotNotification", "params": {"result": {}}}).encode(),
            json.dumps({"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad"}}).encode(),
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "method": "transactionNotification",
                    "params": {"result": {"transaction": {"transaction": ["%%%", "base64"], "meta": {}}}},
                }
            ).encode(),
        ]
        for frame in frames:
            with self.subTest(frame=frame[:40]):
                with self.assertRaises(DecodeError):
                    self.decoder.decode(frame)

    def test_ack_and_account_notification_are_keyed_by_pubkey(self) -> None:
        watched = str(Pubkey.new_unique())
        stream_filter = StreamFilter(
            transactions={"pool": TransactionFilter(account_required=("a",))},
            accounts={"vault": AccountFilter(accounts=(watched,))},
            data_slice=DataSlice(offset=64, length=8),
        )
        self.decoder.bind_filter(stream_filter)

        ack = self.decoder.parse_record(json.dumps({"jsonrpc": "2.0", "id": 2, "result": 99}).encode())
        self.assertEqual(ack, SubscriptionAck(request_id=2, subscription_id=99))

        raw = bytes(64) + struct.pack("<Q", 5_000) + bytes(93)
        notification = {
            "jsonrpc": "2.0",
            "method": "accountNotification",
            "params": {
                "subscription": 99,
                "result": {
                    "context": {"slot": 12},
                    "value": {"data": [base64.b64encode(raw).decode("ascii"), "base64"], "owner": TOKEN_PROGRAM},
                },
            },
        }
        record = self.decoder.parse_record(json.dumps(notification).encode())

        self.assertIsInstance(record, AccountRecord)
        assert isinstance(record, AccountRecord)
        self.assertEqual(record.pubkey, watched)
        self.assertEqual(record.slot, 12)
        self.assertEqual(struct.unpack("<Q", record.data)[0], 5_000)
        self.assertIsNone(self.decoder.decode(json.dumps(notification).encode()))

    def test_short_payloads_and_unknown_discriminators_are_ignored(self) -> None:
        accounts = tuple(str(Pubkey.new_unique()) for _ in range(18))
        short = DecodedInstruction(program_id="p", accounts=accounts, data=bytes([9, 1, 2]), outer_index=0)
        unknown = DecodedInstruction(
            program_id="p",
            accounts=accounts,
            data=struct.pack("<BQQ", 1, 10, 20),
            outer_index=0,
        )
        swap_out = DecodedInstruction(
            program_id="p",
            accounts=accounts,
            data=struct.pack("<BQQ", 11, 30, 40),
            outer_index=0,
        )

        self.assertIsNone(TransactionDecoder.decode_swap(short))
        self.assertIsNone(TransactionDecoder.decode_swap(unknown))
        decoded = TransactionDecoder.decode_swap(swap_out)
        assert decoded is not None
        self.assertEqual(decoded.variant, "swap_base_out")
        self.assertEqual(decoded.pool_id, accounts[1])
        self.assertEqual(decoded.owner, accounts[-1])


if __name__ == "__main__":
    unittest.main()
