"""
Hosts file mutator.

Blocked sites live in a section of the hosts file that starts with a single
marker comment and holds one ``127.0.0.1 <url>`` line per site:

    <original content>

    # Added by selfcontrol
    127.0.0.1 reddit.com
    127.0.0.1 youtube.com

Every operation is a read-modify-write of the whole file and runs under a
process-wide lock, so concurrent timer teardowns never interleave.
"""

import re
import threading
from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from self_control.errors import HostsFileError
from self_control.settings import settings
from self_control.utils.signals import critical_section

MARKER = "# Added by selfcontrol"
REDIRECT_IP = "127.0.0.1"

_SECTION_HEADER = f"\n{MARKER}\n"
_ENTRY = re.compile(rf"^{re.escape(REDIRECT_IP)}[ \t]+(\S+)[ \t]*$")

# One lock per process, shared by every HostsFile instance
hosts_lock = threading.Lock()


def _host_of(line: str) -> str | None:
    match = _ENTRY.match(line)
    return match.group(1) if match else None


class _Section:
    """The hosts file split around the marked section."""

    def __init__(self, content: str):
        self.present = True
        if content.startswith(_SECTION_HEADER[1:]):
            self.head, tail = "", content[len(_SECTION_HEADER) - 1 :]
        else:
            index = content.find(_SECTION_HEADER)
            if index == -1:
                self.present = False
                self.head, self.entries, self.rest = content, [], ""
                return
            self.head, tail = content[:index], content[index + len(_SECTION_HEADER) :]

        lines = tail.split("\n")
        count = 0
        while count < len(lines) and _host_of(lines[count]):
            count += 1
        self.entries = lines[:count]
        self.rest = "\n".join(lines[count:])

    def hosts(self) -> list[str]:
        return [_host_of(line) for line in self.entries]

    def render(self, keep_marker: bool) -> str:
        body = "".join(f"{line}\n" for line in self.entries)
        if keep_marker:
            return self.head + _SECTION_HEADER + body + self.rest
        # The header newline also terminated the last original line
        tail = body + self.rest
        if tail and self.head and not self.head.endswith("\n"):
            tail = "\n" + tail
        return self.head + tail


class HostsFile:
    """Idempotent add/remove of selfcontrol entries in the system hosts file."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path) if path else settings.hosts_file

    def _read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise HostsFileError(self.path, e) from e

    def _write(self, content: str) -> None:
        try:
            with critical_section(), open(self.path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise HostsFileError(self.path, e) from e

    def add_entries(self, urls: Iterable[str]) -> list[str]:
        """
        Adds one entry per URL not already present as a host name anywhere in
        the file. Writes the marker the first time. Returns the URLs added.
        """
        with hosts_lock:
            content = self._read()
            present = {
                host
                for line in content.splitlines()
                if not line.lstrip().startswith("#")
                for host in line.split()[1:]
            }
            added = []
            for url in urls:
                if url and url not in present and url not in added:
                    added.append(url)
            if not added:
                logger.debug("Hosts file already blocks every requested site.")
                return []

            section = _Section(content)
            section.entries.extend(f"{REDIRECT_IP} {url}" for url in added)
            self._write(section.render(keep_marker=True))

        logger.info(f"Added {len(added)} hosts entries: {', '.join(added)}")
        return added

    def remove_entries(
        self, urls: Iterable[str] | None = None, all_entries: bool = False
    ) -> list[str]:
        """
        Removes marked-section lines for the given URLs, each URL consumed at most
        once (first match wins). ``urls=None`` matches every line in the section.

        With ``all_entries`` the marker and the blank line before it go as well.
        Otherwise the marker is kept while other entries remain, and removed with
        its blank line once the section is empty. Returns the hosts removed.
        """
        with hosts_lock:
            content = self._read()
            section = _Section(content)
            if not section.present:
                return []

            pending = None if urls is None else list(urls)
            kept, removed = [], []
            for line in section.entries:
                host = _host_of(line)
                if pending is None:
                    removed.append(host)
                elif host in pending:
                    pending.remove(host)
                    removed.append(host)
                else:
                    kept.append(line)
            section.entries = kept

            keep_marker = not all_entries and bool(kept)
            if not removed and keep_marker:
                return []
            self._write(section.render(keep_marker=keep_marker))

        if removed:
            logger.info(f"Removed {len(removed)} hosts entries: {', '.join(removed)}")
        return removed

    def blocked_hosts(self) -> list[str]:
        """Host names currently listed in the marked section."""
        with hosts_lock:
            return _Section(self._read()).hosts()
