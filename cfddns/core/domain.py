"""Domain names — fully qualified names and wildcards, and their zone suffixes."""

from dataclasses import dataclass
from typing import Iterator, Union


def to_ascii(name: str) -> str:
    """Normalise *name* to its ASCII (Punycode) form with best efforts.

    Leading and trailing dots are dropped and the result is lower-cased.
    Labels that cannot be IDNA-encoded are kept as they are.
    """
    name = name.strip().strip(".").lower()
    labels = []
    for label in name.split("."):
        try:
            labels.append(label.encode("idna").decode("ascii") if label else label)
        except UnicodeError:
            labels.append(label)
    return ".".join(labels)


def safely_to_unicode(ascii_name: str) -> str:
    """Return the Unicode form of *ascii_name* when it round-trips exactly.

    Otherwise the ASCII form is returned unchanged so that the description
    is never ambiguous.
    """
    try:
        unicode_name = ascii_name.encode("ascii").decode("idna")
        if unicode_name.encode("idna").decode("ascii") != ascii_name:
            return ascii_name
    except UnicodeError:
        return ascii_name
    return unicode_name


class ZoneSuffixes:
    """Finite, restartable sequence of zone-name candidates for a domain.

    ``ZoneSuffixes("a.b.c")`` yields ``a.b.c``, ``b.c`` and ``c``. Each call to
    ``iter()`` starts over from the full name.
    """

    def __init__(self, name: str) -> None:
        self._name = name

    def __iter__(self) -> Iterator[str]:
        cursor = 0
        while cursor < len(self._name):
            yield self._name[cursor:]
            shift = self._name.find(".", cursor)
            if shift == -1:
                return
            cursor = shift + 1

    def __repr__(self) -> str:
        return f"ZoneSuffixes({self._name!r})"


@dataclass(frozen=True)
class FQDN:
    """A fully qualified domain name in ASCII form."""

    name: str

    def dns_name_ascii(self) -> str:
        return self.name

    def describe(self) -> str:
        return safely_to_unicode(self.name)

    def zones(self) -> ZoneSuffixes:
        return ZoneSuffixes(self.name)


@dataclass(frozen=True)
class Wildcard:
    """The wildcard ``*.<zone>``; *name* holds the part after ``*.``."""

    name: str

    def dns_name_ascii(self) -> str:
        if not self.name:
            return "*"
        return f"*.{self.name}"

    def describe(self) -> str:
        if not self.name:
            return "*"
        return f"*.{safely_to_unicode(self.name)}"

    def zones(self) -> ZoneSuffixes:
        # The "*" label itself is never a zone name.
        return ZoneSuffixes(self.name)


Domain = Union[FQDN, Wildcard]


def parse_domain(raw: str) -> Domain:
    """Parse user input into an :data:`Domain`."""
    normalized = to_ascii(raw)
    if normalized == "*":
        return Wildcard("")
    if normalized.startswith("*."):
        return Wildcard(normalized[2:].strip("."))
    return FQDN(normalized)


def sort_domains(domains: list[Domain]) -> list[Domain]:
    """Return *domains* sorted by their ASCII names."""
    return sorted(domains, key=lambda d: d.dns_name_ascii())
