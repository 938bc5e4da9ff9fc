"""
Helpers around the gpg command line.

Parses ``gpg --list-secret-keys --with-colons`` output and builds the
parameter file consumed by ``gpg --batch --generate-key``. Nothing here runs
gpg itself; the wizard does that and hands the text over.

Colon listing reference: doc/DETAILS in the GnuPG source tree.
"""

import re
from dataclasses import dataclass, field
from typing import Optional

# Public key algorithm ids (RFC 4880 / RFC 6637, field 4 of sec/ssb records)
ALGORITHMS = {
    "1": "rsa",
    "16": "elg",
    "17": "dsa",
    "18": "ecdh",
    "19": "ecdsa",
    "22": "eddsa",
}

GPG_KEY_TYPES = ("RSA", "ECC")

UID_EMAIL_RE = re.compile(r"<([^<>]+)>")
ESCAPE_RE = re.compile(r"\\x([0-9a-fA-F]{2})")


@dataclass
class SecretKey:
    """One primary secret key from the colon listing."""

    key_id: str
    fingerprint: str = ""
    algorithm: str = ""
    length: int = 0
    curve: str = ""
    created: int = 0
    expires: Optional[int] = None
    uids: list = field(default_factory=list)

    @property
    def emails(self):
        found = []
        for uid in self.uids:
            m = UID_EMAIL_RE.search(uid)
            if m:
                found.append(m.group(1).lower())
            elif "@" in uid:
                found.append(uid.strip().lower())
        return found

    @property
    def ident(self):
        """Best identifier to hand back to gpg."""
        return self.fingerprint or self.key_id

    @property
    def description(self):
        if self.curve:
            return self.curve
        return f"{self.algorithm}{self.length or ''}"


def _field(fields, index):
    return fields[index] if index < len(fields) else ""


def _timestamp(value):
    # Seconds since epoch; gpg can also emit ISO 8601 with --fixed-list-mode
    # variants, which we don't need to order keys.
    return int(value) if value.isdigit() else 0


def _unescape(value):
    return ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 16)), value)


def parse_secret_keys(output):
    """Parse ``gpg --list-secret-keys --with-colons`` into SecretKey objects."""
    keys = []
    current = None
    in_subkey = False

    for line in output.splitlines():
        fields = line.split(":")
        record = fields[0]

        if record == "sec":
            length = _field(fields, 2)
            expires = _timestamp(_field(fields, 6))
            current = SecretKey(
                key_id=_field(fields, 4),
                algorithm=ALGORITHMS.get(_field(fields, 3), _field(fields, 3)),
                length=int(length) if length.isdigit() else 0,
                curve=_field(fields, 16),
                created=_timestamp(_field(fields, 5)),
                expires=expires or None,
            )
            keys.append(current)
            in_subkey = False
        elif current is None:
            continue
        elif record in ("ssb", "sub"):
            in_subkey = True
        elif record == "fpr" and not in_subkey and not current.fingerprint:
            current.fingerprint = _field(fields, 9)
        elif record == "uid":
            current.uids.append(_unescape(_field(fields, 9)))

    return keys


def _newest_first(keys):
    return sorted(keys, key=lambda k: k.created, reverse=True)


def new_keys(before, after):
    """Keys present in ``after`` but not in ``before``, newest first."""
    known = {k.ident for k in before}
    return _newest_first([k for k in after if k.ident not in known])


def keys_for_email(keys, email):
    """Keys with a user id for ``email``, newest first."""
    email = email.strip().lower()
    return _newest_first([k for k in keys if email in k.emails])


def batch_parameters(name, email, key_type="RSA", key_length=4096,
                     expire="0", comment="", passphrase=""):
    """Build the unattended key generation parameters for gpg.

    RSA keys get an RSA encryption subkey of the same size; ECC keys use an
    ed25519 primary with a cv25519 encryption subkey. An empty passphrase
    produces an unprotected key.
    """
    values = (name, email, comment, passphrase, str(expire))
    if any("\n" in v or "\r" in v for v in values):
        raise ValueError("GPG key parameters cannot contain line breaks")
    if key_type not in GPG_KEY_TYPES:
        raise ValueError(f"Unsupported GPG key type: {key_type}")

    lines = [f"Passphrase: {passphrase}" if passphrase else "%no-protection"]
    if key_type == "RSA":
        lines += [
            "Key-Type: RSA",
            f"Key-Length: {key_length}",
            "Key-Usage: sign",
            "Subkey-Type: RSA",
            f"Subkey-Length: {key_length}",
            "Subkey-Usage: encrypt",
        ]
    else:
        lines += [
            "Key-Type: EDDSA",
            "Key-Curve: ed25519",
            "Key-Usage: sign",
            "Subkey-Type: ECDH",
            "Subkey-Curve: cv25519",
            "Subkey-Usage: encrypt",
        ]
    lines += [f"Name-Real: {name}", f"Name-Email: {email}"]
    if comment:
        lines.append(f"Name-Comment: {comment}")
    lines += [f"Expire-Date: {expire}", "%commit"]
    return "\n".join(lines) + "\n"
