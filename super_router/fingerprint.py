"""
Prompt fingerprints used as cache keys

Only leading and trailing whitespace is normalised. Case and inner whitespace
are part of the prompt the provider sees, so they stay significant.
"""

import hashlib


def normalize_prompt(prompt: str) -> str:
    return prompt.strip()


def fingerprint(endpoint_path: str, prompt: str) -> str:
    """SHA-256 hex digest of the endpoint path and the normalised prompt"""
    material = f"{endpoint_path}\n{normalize_prompt(prompt)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
