"""Encryption Recipients - who can open an eldim upload

Two flavours come from the config file:
- age-id:  native age X25519 recipients ("age1...")
- age-ssh: SSH public keys ("ssh-ed25519 AAAA..." / "ssh-rsa AAAA...")

Every uploaded object is sealed for all of them at once; any single matching
private identity can decrypt it.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

import structlog
from pyrage import ssh, x25519

from eldim.errors import ValidationError

logger = structlog.get_logger()

Recipient = Union[x25519.Recipient, ssh.Recipient]


def parse_age_recipient(value: str) -> x25519.Recipient:
    try:
        return x25519.Recipient.from_str(value.strip())
    except Exception as e:
        raise ValidationError(f"Failed to parse age Identity '{value}': {e}")


def parse_ssh_recipient(value: str) -> ssh.Recipient:
    try:
        return ssh.Recipient.from_str(value.strip())
    except Exception as e:
        raise ValidationError(f"Failed to parse age ssh key Identity '{value}': {e}")


@dataclass(frozen=True)
class RecipientSet:
    """Immutable, non-empty list of parsed recipients"""

    recipients: Tuple[Recipient, ...]
    age_ids: Tuple[str, ...] = ()
    ssh_keys: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, age_ids: Sequence[str], ssh_keys: Sequence[str]) -> "RecipientSet":
        """Parse recipient strings, failing on the first bad one

        Raises:
            ValidationError: no recipients at all, or an unparseable entry
        """
        if len(age_ids) + len(ssh_keys) == 0:
            raise ValidationError("Please configure at least one age encryption key")

        parsed: List[Recipient] = [parse_age_recipient(r) for r in age_ids]
        parsed.extend(parse_ssh_recipient(r) for r in ssh_keys)

        logger.info("Encryption recipients loaded", age=len(age_ids), ssh=len(ssh_keys))
        return cls(recipients=tuple(parsed), age_ids=tuple(age_ids), ssh_keys=tuple(ssh_keys))

    def __len__(self) -> int:
        return len(self.recipients)

    def as_list(self) -> List[Recipient]:
        return list(self.recipients)
