"""
投票解密与计票

Votes arrive as AES-256-GCM payloads. The key is derived from the poll's
``messageSecret`` (stored as the tally's ``sign``) together with the poll id,
the poll creator and the voter, so only parties holding the poll message can
read who picked what. The decrypted body lists the SHA-256 of every selected
option name.
"""

import base64
import binascii
import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple

from Crypto.Cipher import AES
from Crypto.Hash import HMAC, SHA256
from Crypto.Random import get_random_bytes

from whatsapp_manager.models.chat import content_type_of

VOTE_LABEL = b"Poll Vote"
TAG_SIZE = 16
IV_SIZE = 12

POLL_CONTENT_TYPES = (
    "pollCreationMessage",
    "pollCreationMessageV2",
    "pollCreationMessageV3",
)


class PollDecryptionError(Exception):
    """投票数据无法解密或解析"""

    pass


def option_hash(name: str) -> str:
    return hashlib.sha256(name.encode("utf-8")).hexdigest()


def _vote_key(secret: bytes, poll_id: str, creator: str, voter: str) -> bytes:
    """派生投票加密密钥"""
    root = HMAC.new(bytes(32), secret, digestmod=SHA256).digest()
    info = (
        poll_id.encode("utf-8")
        + creator.encode("utf-8")
        + voter.encode("utf-8")
        + VOTE_LABEL
        + b"\x01"
    )
    return HMAC.new(root, info, digestmod=SHA256).digest()


def _aad(poll_id: str, voter: str) -> bytes:
    return f"{poll_id}\x00{voter}".encode("utf-8")


def decrypt_poll_vote(
    secret: bytes,
    poll_id: str,
    creator: str,
    voter: str,
    enc_payload: bytes,
    enc_iv: bytes,
) -> List[str]:
    """解密一张选票

    Args:
        secret: Poll message secret
        poll_id: Id of the poll creation message
        creator: Jid of the poll author
        voter: Jid of the voter
        enc_payload: Ciphertext followed by the 16 byte GCM tag
        enc_iv: GCM nonce

    Returns:
        Hex SHA-256 hashes of the selected option names

    Raises:
        PollDecryptionError: The payload is truncated, forged or malformed
    """
    if len(enc_payload) <= TAG_SIZE or not enc_iv:
        raise PollDecryptionError("vote payload too short")

    key = _vote_key(secret, poll_id, creator, voter)
    ciphertext, tag = enc_payload[:-TAG_SIZE], enc_payload[-TAG_SIZE:]
    try:
        cipher = AES.new(key, AES.MODE_GCM, nonce=enc_iv)
        cipher.update(_aad(poll_id, voter))
        plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        selected = json.loads(plaintext.decode("utf-8"))["selectedOptions"]
    except (ValueError, KeyError, TypeError) as e:
        raise PollDecryptionError(f"vote authentication failed: {e}")

    if not isinstance(selected, list):
        raise PollDecryptionError("selectedOptions is not a list")
    return [str(h) for h in selected]


def encrypt_poll_vote(
    secret: bytes,
    poll_id: str,
    creator: str,
    voter: str,
    options: List[str],
    iv: Optional[bytes] = None,
) -> Tuple[bytes, bytes]:
    """加密一张选票, 返回 (enc_payload, enc_iv)"""
    iv = iv or get_random_bytes(IV_SIZE)
    key = _vote_key(secret, poll_id, creator, voter)
    body = json.dumps({"selectedOptions": [option_hash(o) for o in options]})

    cipher = AES.new(key, AES.MODE_GCM, nonce=iv)
    cipher.update(_aad(poll_id, voter))
    ciphertext, tag = cipher.encrypt_and_digest(body.encode("utf-8"))
    return ciphertext + tag, iv


def poll_of(body: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    content_type = content_type_of(body)
    if content_type not in POLL_CONTENT_TYPES:
        return None
    return body[content_type] or {}


def new_tally(body: Dict[str, Any]) -> Dict[str, Any]:
    """Build an empty tally from a poll creation body"""
    poll = poll_of(body) or {}
    secret = (body.get("messageContextInfo") or {}).get("messageSecret") or ""
    return {
        "content": poll.get("name") or "",
        "items": [
            {"content": option.get("optionName") or "", "voters": []}
            for option in poll.get("options") or []
        ],
        "sign": secret,
    }


def secret_of(tally: Dict[str, Any]) -> bytes:
    try:
        secret = base64.b64decode(tally.get("sign") or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise PollDecryptionError(f"invalid poll secret: {e}")
    if not secret:
        raise PollDecryptionError("poll has no secret")
    return secret


def apply_vote(tally: Dict[str, Any], voter: str, selected: List[str]) -> Dict[str, Any]:
    """Record ``voter``'s current choice

    The voter is removed from every option first, so a caster is only ever
    listed under the options of their latest vote. An empty selection
    withdraws the vote.
    """
    chosen = set(selected)
    for item in tally.get("items", []):
        voters = [v for v in item.get("voters", []) if v != voter]
        if option_hash(item.get("content", "")) in chosen:
            voters.append(voter)
        item["voters"] = voters
    return tally


def count_votes(tally: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not tally:
        return []
    return [
        {"name": item.get("content", ""), "count": len(item.get("voters", []))}
        for item in tally.get("items", [])
    ]
