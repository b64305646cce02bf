"""
Tests for whatsapp_manager.core.poll - vote encryption and tallying
"""

import base64
import json

import pytest

from whatsapp_manager.core.poll import (
    PollDecryptionError,
    apply_vote,
    count_votes,
    decrypt_poll_vote,
    encrypt_poll_vote,
    new_tally,
    option_hash,
    secret_of,
)

SECRET = bytes(range(32))
POLL_ID = "3EB0POLL"
CREATOR = "15550000000@s.whatsapp.net"
VOTER = "15551111111@s.whatsapp.net"

POLL_BODY = {
    "pollCreationMessageV3": {
        "name": "Lunch?",
        "options": [{"optionName": "Pizza"}, {"optionName": "Sushi"}],
        "selectableOptionsCount": 1,
    },
    "messageContextInfo": {"messageSecret": base64.b64encode(SECRET).decode()},
}


class TestVoteCrypto:
    def test_encrypt_then_decrypt(self):
        payload, iv = encrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, ["Sushi"])

        selected = decrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, payload, iv)

        assert selected == [option_hash("Sushi")]

    def test_known_iv_is_used(self):
        iv = bytes(12)
        _, used = encrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, ["Pizza"], iv=iv)

        assert used == iv

    def test_wrong_voter_fails_authentication(self):
        """The voter jid is part of both the key and the associated data"""
        payload, iv = encrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, ["Pizza"])

        with pytest.raises(PollDecryptionError):
            decrypt_poll_vote(SECRET, POLL_ID, CREATOR, "other@s.whatsapp.net", payload, iv)

    def test_wrong_secret_fails(self):
        payload, iv = encrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, ["Pizza"])

        with pytest.raises(PollDecryptionError):
            decrypt_poll_vote(bytes(32), POLL_ID, CREATOR, VOTER, payload, iv)

    def test_tampered_payload_fails(self):
        payload, iv = encrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, ["Pizza"])
        tampered = bytes([payload[0] ^ 1]) + payload[1:]

        with pytest.raises(PollDecryptionError):
            decrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, tampered, iv)

    def test_truncated_payload_fails(self):
        with pytest.raises(PollDecryptionError):
            decrypt_poll_vote(SECRET, POLL_ID, CREATOR, VOTER, b"short", bytes(12))


class TestTally:
    def test_new_tally(self):
        tally = new_tally(POLL_BODY)

        assert tally["content"] == "Lunch?"
        assert [i["content"] for i in tally["items"]] == ["Pizza", "Sushi"]
        assert all(i["voters"] == [] for i in tally["items"])
        assert secret_of(tally) == SECRET

    def test_revote_moves_voter(self):
        """A caster appears only under their latest choice"""
        tally = new_tally(POLL_BODY)

        apply_vote(tally, VOTER, [option_hash("Pizza")])
        apply_vote(tally, VOTER, [option_hash("Sushi")])

        pizza, sushi = tally["items"]
        assert VOTER not in pizza["voters"]
        assert sushi["voters"] == [VOTER]

    def test_empty_selection_withdraws(self):
        tally = new_tally(POLL_BODY)
        apply_vote(tally, VOTER, [option_hash("Pizza")])

        apply_vote(tally, VOTER, [])

        assert count_votes(tally) == [
            {"name": "Pizza", "count": 0},
            {"name": "Sushi", "count": 0},
        ]

    def test_several_voters(self):
        tally = new_tally(POLL_BODY)
        apply_vote(tally, VOTER, [option_hash("Pizza")])
        apply_vote(tally, CREATOR, [option_hash("Pizza")])

        assert count_votes(tally)[0] == {"name": "Pizza", "count": 2}

    def test_tally_is_json_serializable(self):
        tally = apply_vote(new_tally(POLL_BODY), VOTER, [option_hash("Sushi")])

        assert json.loads(json.dumps(tally)) == tally

    def test_missing_secret(self):
        with pytest.raises(PollDecryptionError):
            secret_of({"sign": ""})

    def test_count_votes_of_nothing(self):
        assert count_votes(None) == []
