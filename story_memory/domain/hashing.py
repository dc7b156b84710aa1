from __future__ import annotations

import hashlib


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(chapter_id: str, text: str) -> str:
    return sha256_text(f"{chapter_id}::{text}")
