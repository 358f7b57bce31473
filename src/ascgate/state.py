from dataclasses import dataclass


@dataclass(frozen=True)
class Credential:
    token: str
    issued_at: float
    expires_at: float

    def is_fresh(self, now: float, buffer: float) -> bool:
        return self.expires_at > now + buffer

    def __repr__(self) -> str:
        # never print the signed token
        return f"Credential(issued_at={self.issued_at}, expires_at={self.expires_at})"
