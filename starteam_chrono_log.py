#!/usr/bin/env python3
"""Chronological change log from StarTeam history output.

Reads the text printed by the StarTeam "hist" command, one "History for:"
block per file, and groups the per-file revisions into logical changes: all
revisions with the same author, the same date to the minute and the same
comment become one Entry listing every file they touched.
"""

import sys
import argparse
import logging
from bisect import insort
from datetime import datetime, timedelta
from enum import Enum

import dateutil.parser
import dateutil.tz

logger = logging.getLogger(__name__)

# Markers printed by StarTeam.  These are a fixed part of the log format.
START_FILE = "History for: "
END_FILE = "=" * 77
START_REVISION = "-" * 28
REVISION_TAG = "Branch Revision: "
AUTHOR_TAG = "Author: "
DATE_TAG = " Date: "


class FileRevision:
    def __init__(self, file_name, file_rev=None):
        self.file_name = file_name
        self.file_rev = file_rev

    def __eq__(self, other):
        if not isinstance(other, FileRevision):
            return NotImplemented
        return (self.file_name, self.file_rev) \
            == (other.file_name, other.file_rev)

    def __repr__(self):
        return "FileRevision(%r, %r)" % (self.file_name, self.file_rev)


class Entry:
    def __init__(self, author=None, encoded_date=None, msg='', files=None):
        self.author = author
        self.encoded_date = encoded_date
        self.msg = msg
        self.files = files if files is not None else [ ]

    # Entries are merged when these agree, so the date only counts down to
    # the minute.
    key_date_format = '%Y%m%d%H%M'
    date_format_string = '%Y-%m-%d %H:%M:%S:'

    def is_complete(self):
        return self.author is not None and self.encoded_date is not None

    def key(self):
        return (self.encoded_date.strftime(self.key_date_format)
                + self.author + self.msg)

    def add_file(self, file_rev):
        self.files.append(file_rev)

    def __repr__(self):
        return "Entry(%r, %r, %r, %r)" % (self.author, self.encoded_date,
                                          self.msg, self.files)

    def report(self, out=None):
        out = out or sys.stdout
        date = self.encoded_date
        if date.tzinfo is not None:
            date = date.astimezone(dateutil.tz.tzlocal())
        print(date.strftime(self.date_format_string), file=out)
        print("  author: %s" % (self.author), file=out)

        for line in self.msg.split("\n"):
            # indent by two, skipping empty lines.
            if line.strip():
                print("  " + line, file=out)
        for file_rev in sorted(self.files, key=lambda x: x.file_name):
            file_name = file_rev.file_name
            if file_rev.file_rev:
                file_name = file_name + ' ' + file_rev.file_rev
            print("  => %s" % (file_name), file=out)
        print(file=out)


class EntryStore:
    """Completed entries by key, handed back newest first.

    The key starts with the minute-rounded date, so descending key order is
    also reverse chronological order.
    """

    def __init__(self):
        self._entries = { }
        self._keys = [ ]

    def __len__(self):
        return len(self._keys)

    def add(self, entry, file_rev):
        key = entry.key()
        existing = self._entries.get(key)
        if existing is None:
            entry.add_file(file_rev)
            self._entries[key] = entry
            insort(self._keys, key)
        else:
            existing.add_file(file_rev)

    def values(self):
        return [self._entries[key] for key in reversed(self._keys)]


def _local(date):
    if date.tzinfo is None:
        return date.replace(tzinfo=dateutil.tz.tzlocal())
    return date


class DateWindow:
    def __init__(self, before, after):
        self.before = _local(before)
        self.after = _local(after)

    @classmethod
    def from_days(cls, days, now=None):
        """Window from `days` ago up to one day past `now`."""
        days = int(days)
        if now is None:
            now = datetime.now(dateutil.tz.tzlocal())
        try:
            before = now - timedelta(days=days)
        except OverflowError:
            # further than datetime reaches; pin to the end of the range.
            before = datetime.min if days > 0 else datetime.max
            before = before.replace(tzinfo=dateutil.tz.tzutc())
        return cls(before, now + timedelta(days=1))

    def contains(self, date):
        return self.before <= _local(date) <= self.after

    def __repr__(self):
        return "DateWindow(%r, %r)" % (self.before, self.after)


def parse_date(text, date_format=None):
    """Parse a StarTeam date, returning None if it can't be read.

    With no date_format, dateutil works out the layout, which copes with the
    usual locale-dependent forms that StarTeam prints.
    """
    text = text.strip()
    try:
        if date_format:
            return datetime.strptime(text, date_format)
        return dateutil.parser.parse(text)
    except (ValueError, OverflowError):
        logger.error("Oops; can't parse date '%s'.", text, exc_info=True)
        return None


class State(Enum):
    GET_FILE = 1
    GET_AUTHOR = 2
    GET_COMMENT = 3
    GET_REVISION = 4


class _Scan:
    # Everything that changes during a single parse.
    def __init__(self):
        self.state = State.GET_FILE
        self.entry = None
        self.file_rev = None
        self.store = EntryStore()


class Parser:

    def __init__(self):
        self.window = None
        self.date_format = None
        self.test_mode = False
        self.encoding = 'utf-8'
        self._handlers = {
            State.GET_FILE: self._get_file,
            State.GET_REVISION: self._get_revision,
            State.GET_AUTHOR: self._get_author,
            State.GET_COMMENT: self._get_comment,
        }

    def configure(self, range_days=None, date_format=None, test_mode=False,
                  now=None, encoding=None):
        # range_days is a number of days, possibly as a string; None or an
        # empty string means no window.  Raises ValueError if it is not an
        # integer.
        if range_days is not None and str(range_days).strip() != '':
            self.window = DateWindow.from_days(range_days, now)
        else:
            self.window = None
        if date_format:
            self.date_format = date_format
        if encoding:
            self.encoding = encoding
        self.test_mode = test_mode
        return self

    def set_test_mode(self, test_mode):
        self.test_mode = test_mode

    def set_date_format(self, date_format):
        self.date_format = date_format

    def parse(self, stream):
        """Parse StarTeam history output into a list of Entry objects.

        The stream may yield text or bytes.  Entries come back newest first.
        Read errors propagate; anything in the log that can't be understood
        just doesn't make it into the result.
        """
        # State transitions, starting with GET_FILE:
        #   GET_FILE      -> GET_REVISION
        #   GET_REVISION  -> GET_AUTHOR or GET_FILE
        #   GET_AUTHOR    -> GET_COMMENT
        #   GET_COMMENT   -> GET_COMMENT, GET_REVISION or GET_FILE
        scan = _Scan()
        line = stream.readline()
        while line:
            if isinstance(line, bytes):
                line = line.decode(self.encoding, 'replace')
            line = line.rstrip("\r\n")
            handler = self._handlers.get(scan.state)
            if handler is None:
                raise RuntimeError("Unknown state: %r" % (scan.state))
            handler(scan, line)
            line = stream.readline()
        if scan.state != State.GET_FILE:
            # the last file block was never closed; whatever it held is lost.
            logger.warning("Oops; bad final state '%s' in %s",
                           scan.state.name,
                           scan.file_rev.file_name if scan.file_rev else '?')
        return scan.store.values()

    def add_entry(self, store, entry, file_rev):
        # Store entry with file_rev, or add file_rev to the entry already
        # stored under the same key.  Incomplete entries are dropped.
        if not entry.is_complete():
            if entry.author is not None:
                logger.debug("Dropping %s revision %s of %s: no date.",
                             entry.author, file_rev.file_rev,
                             file_rev.file_name)
            return
        if (not self.test_mode and self.window is not None
                and not self.window.contains(entry.encoded_date)):
            return
        store.add(entry, file_rev)

    def _get_file(self, scan, line):
        if line.startswith(START_FILE):
            scan.entry = Entry()
            scan.file_rev = FileRevision(line[len(START_FILE):])
            scan.state = State.GET_REVISION

    def _get_revision(self, scan, line):
        pos = line.find(REVISION_TAG)
        if pos != -1:
            scan.file_rev.file_rev = line[pos + len(REVISION_TAG):]
            scan.state = State.GET_AUTHOR
        elif line.startswith(END_FILE):
            # no more revisions for this file.
            self.add_entry(scan.store, scan.entry, scan.file_rev)
            scan.state = State.GET_FILE

    def _get_author(self, scan, line):
        if line.startswith(AUTHOR_TAG):
            pos = line.find(DATE_TAG)
            if pos == -1:
                logger.error("Oops; no date in '%s'.", line)
                scan.entry.author = line[len(AUTHOR_TAG):]
            else:
                scan.entry.author = line[len(AUTHOR_TAG):pos]
                scan.entry.encoded_date = parse_date(
                    line[pos + len(DATE_TAG):], self.date_format)
            scan.state = State.GET_COMMENT

    def _get_comment(self, scan, line):
        if line.startswith(START_REVISION):
            self.add_entry(scan.store, scan.entry, scan.file_rev)
            # same file, next revision.
            scan.entry = Entry()
            scan.file_rev = FileRevision(scan.file_rev.file_name)
            scan.state = State.GET_REVISION
        elif line.startswith(END_FILE):
            self.add_entry(scan.store, scan.entry, scan.file_rev)
            scan.state = State.GET_FILE
        else:
            scan.entry.msg += line + "\n"


### Main program

def main(argv=None):
    desc = "Print a chronological change log from StarTeam history output."
    arg_parser = argparse.ArgumentParser(description=desc)
    arg_parser.add_argument("logfile", nargs="?", default="-",
                            help="StarTeam history output (default stdin)")
    arg_parser.add_argument("--range", "-r", dest="range_days",
                            metavar="DAYS",
                            help="only show changes from the last DAYS days")
    arg_parser.add_argument("--date-format", "-f",
                            help="strptime format of the Date: field")
    arg_parser.add_argument("--test-mode", action="store_true",
                            help="ignore --range when selecting entries")
    arg_parser.add_argument("--encoding", default="utf-8",
                            help="encoding of the log (default utf-8)")
    arg_parser.add_argument("--verbose", "-v", action="store_true")
    opts = arg_parser.parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr, format="%(levelname)s: %(message)s",
        level=logging.DEBUG if opts.verbose else logging.WARNING)

    parser = Parser()
    try:
        parser.configure(range_days=opts.range_days,
                         date_format=opts.date_format,
                         test_mode=opts.test_mode,
                         encoding=opts.encoding)
    except ValueError:
        arg_parser.error("--range must be a number of days, not %r"
                         % (opts.range_days))
    if opts.logfile == "-":
        entries = parser.parse(sys.stdin.buffer)
    else:
        with open(opts.logfile, "rb") as stream:
            entries = parser.parse(stream)
    for entry in entries:
        entry.report()
    return 0


if __name__ == "__main__":
    sys.exit(main())
