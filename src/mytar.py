#!/usr/bin/env python3

import os
import sys
import argparse

PROGRAM_NAME = "mytar"

BLOCK_SIZE = 512
ZERO_BLOCK = bytes(BLOCK_SIZE)

USTAR_MAGIC = b"ustar"
REGULAR_FILE = b"0"

EXIT_SUCCESS = 0
EXIT_FAILURE = 2

NOT_RECOVERABLE = "Error is not recoverable: exiting now"
PREVIOUS_ERRORS = "Exiting with failure status due to previous errors"


class TarError(RuntimeError):
    fatal_message = PREVIOUS_ERRORS


class NotATarError(TarError):
    def __init__(self):
        super().__init__("This does not look like a tar archive")


class UnsupportedTypeError(TarError):
    def __init__(self, type_flag):
        self.type_flag = type_flag
        super().__init__("Unsupported header type: {}".format(type_flag[0]))


class UnexpectedEofError(TarError):
    fatal_message = NOT_RECOVERABLE

    def __init__(self, message="Unexpected EOF in archive"):
        super().__init__(message)


class ShortReadError(UnexpectedEofError):
    pass


class CannotCreateError(TarError):
    fatal_message = NOT_RECOVERABLE

    def __init__(self, name, reason, action="open"):
        self.name = name
        self.reason = reason
        super().__init__("{}: Cannot {}: {}".format(name, action, reason))


class BlockSource:
    """
    Reads an archive stream one 512-byte block at a time.
    """

    def __init__(self, stream):
        self.stream = stream
        self.offset = 0

    @property
    def position(self):
        return self.offset // BLOCK_SIZE

    def read_block(self):
        """
        Returns the next full block, or None when the stream ends exactly
        on a block boundary. Raises ShortReadError on a partial block.
        """
        block = b""
        while len(block) < BLOCK_SIZE:
            data = self.stream.read(BLOCK_SIZE - len(block))
            if not data:
                break
            block += data
        self.offset += len(block)
        if len(block) == 0:
            return None
        if len(block) < BLOCK_SIZE:
            raise ShortReadError()
        return block


def is_zero_block(block):
    return block == ZERO_BLOCK


def parse_octal(field):
    # like strtol(field, NULL, 8): leading blanks, then digits until the first non-octal byte
    value = 0
    digits = field.lstrip(b" ")
    for byte in digits:
        if byte < 0x30 or byte > 0x37:
            break
        value = value * 8 + (byte - 0x30)
    return value


class FileHeader:
    def __init__(self, name, size, type_flag, magic):
        self.name = name
        self.size = size
        self.type_flag = type_flag
        self.magic = magic

    @property
    def block_count(self):
        # an empty member still owns one (padding) block
        if self.size == 0:
            return 1
        return 1 + (self.size - 1) // BLOCK_SIZE

    @classmethod
    def from_block(cls, block):
        if len(block) != BLOCK_SIZE:
            raise ValueError("Header block must be {} bytes".format(BLOCK_SIZE))
        magic = cls.__get_magic(block)
        if magic != USTAR_MAGIC:
            raise NotATarError()
        type_flag = cls.__get_type_flag(block)
        if type_flag != REGULAR_FILE:
            raise UnsupportedTypeError(type_flag)
        return cls(cls.__get_file_name(block), cls.__get_file_size(block),
            type_flag, magic)

    @staticmethod
    def __get_file_name(block): # string
        offset, size = 0, 100
        fname = block[offset:offset+size]
        end = fname.find(b"\x00")
        if end != -1:
            fname = fname[:end]
        return fname.decode("utf-8", "surrogateescape")

    @staticmethod
    def __get_file_size(block): # int
        offset, size = 124, 12
        return parse_octal(block[offset:offset+size])

    @staticmethod
    def __get_type_flag(block): # bytes
        offset, size = 156, 1
        return block[offset:offset+size]

    @staticmethod
    def __get_magic(block): # bytes
        offset, size = 257, 5
        return block[offset:offset+size]


class SelectionSet:
    """
    Member names requested by the caller. Each name is consumed by the
    first archive entry that matches it; an empty set selects everything.
    """

    def __init__(self, names=()):
        self.names = list(names)
        self.found = [False] * len(self.names)

    def select(self, name):
        if not self.names:
            return True
        for i, requested in enumerate(self.names):
            if not self.found[i] and requested == name:
                self.found[i] = True
                return True
        return False

    def not_found(self):
        return [name for name, found in zip(self.names, self.found) if not found]


class Extractor:
    def __init__(self, directory=None):
        self.directory = directory

    def path_for(self, name):
        if not self.directory:
            return name
        # with -C, members stay inside the target directory
        parts = name.replace(os.sep, "/").split("/")
        if os.path.isabs(name) or ".." in parts:
            raise CannotCreateError(name, "Member name leaves target directory")
        return os.path.join(self.directory, name)

    def open(self, name):
        try:
            return open(self.path_for(name), "wb")
        except OSError as e:
            raise CannotCreateError(name, e.strerror or str(e)) from e

    def write(self, sink, data):
        try:
            sink.write(data)
        except OSError as e:
            raise CannotCreateError(sink.name, e.strerror or str(e), "write") from e

    def close(self, sink):
        try:
            sink.close()
        except OSError as e:
            raise CannotCreateError(sink.name, e.strerror or str(e), "write") from e


class Tar:

    def __init__(self, file_path=None, fileobj=None, out=None, err=None):
        if fileobj is None and not file_path:
            raise ValueError("Bad file path")
        self.file_path = file_path
        self.fileobj = fileobj
        self.input_stream = None
        self.out = out if out is not None else sys.stdout
        self.err = err if err is not None else sys.stderr

    def __enter__(self):
        self.open()
        return self

    def open(self):
        if self.input_stream is not None:
            return
        if self.fileobj is not None:
            self.input_stream = self.fileobj
        else:
            self.input_stream = open(self.file_path, "rb")

    def __exit__(self, type, value, traceback):
        self.close()

    def close(self):
        # a borrowed file object stays open
        if self.input_stream and self.fileobj is None:
            self.input_stream.close()
        self.input_stream = None

    def list(self, names=()):
        """
        Prints the selected member names in archive order and returns the
        requested names that were never found.
        """
        selection = SelectionSet(names)
        self.__walk(selection, self.__list_member)
        return selection.not_found()

    def extract(self, names=(), verbose=False, directory=None):
        """
        Writes the selected members to files named after them and returns
        the requested names that were never found.
        """
        selection = SelectionSet(names)
        extractor = Extractor(directory)

        def extract_member(source, header):
            sink = extractor.open(header.name)
            try:
                if verbose:
                    self.__print(header.name)
                self.__consume(source, header, extractor, sink)
            finally:
                extractor.close(sink)

        self.__walk(selection, extract_member)
        return selection.not_found()

    def warn(self, message):
        print("{}: {}".format(PROGRAM_NAME, message), file=self.err)

    def __print(self, name):
        # names carry undecodable archive bytes as surrogates
        buffer = getattr(self.out, "buffer", None)
        if buffer is None:
            print(name, file=self.out)
            self.out.flush()
            return
        self.out.flush()
        buffer.write(name.encode("utf-8", "surrogateescape") + b"\n")
        buffer.flush()

    def __list_member(self, source, header):
        self.__print(header.name)
        self.__consume(source, header)

    def __walk(self, selection, on_selected):
        if self.input_stream is None:
            raise RuntimeError("Archive is not open")
        source = BlockSource(self.input_stream)
        while True:
            block = source.read_block()
            if block is None:
                self.warn("Archive ends without end-of-archive marker")
                break
            if is_zero_block(block):
                self.__check_terminator(source)
                break
            header = FileHeader.from_block(block)
            if selection.select(header.name):
                on_selected(source, header)
            else:
                self.__consume(source, header)

    def __check_terminator(self, source):
        try:
            block = source.read_block()
        except ShortReadError:
            block = None
        if block is None or not is_zero_block(block):
            self.warn("A lone zero block at {}".format(source.position))

    def __consume(self, source, header, extractor=None, sink=None):
        bytes_left = header.size
        for _ in range(header.block_count):
            block = source.read_block()
            if block is None:
                raise UnexpectedEofError()
            if sink is not None:
                data = block[:bytes_left]
                extractor.write(sink, data)
                bytes_left -= len(data)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        description="List or extract regular files from a ustar archive.",
        usage="%(prog)s {-t | -x} [-v] -f archive [-C directory] [file ...]"
    )
    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument('-t', dest='list', action='store_true', help='List the contents of an archive.')
    mode_group.add_argument('-x', dest='extract', action='store_true', help='Extract files from an archive.')

    parser.add_argument('-v', dest='verbose', action='store_true', help='Print the name of each extracted file.')
    parser.add_argument('-f', dest='archive_file', help="Use archive file ARCHIVE. Use '-' for stdin.")
    parser.add_argument('-C', dest='directory', help='Extract into DIRECTORY instead of the current directory.')
    parser.add_argument('files', nargs='*', help='Members to list or extract (default: all).')
    return parser.parse_args(argv)


def run(args, out=None, err=None):
    out = out if out is not None else sys.stdout
    err = err if err is not None else sys.stderr

    def report(message):
        print("{}: {}".format(PROGRAM_NAME, message), file=err)

    if not args.archive_file:
        report("No archive file specified")
        return EXIT_FAILURE

    if args.archive_file == '-':
        tar = Tar(fileobj=sys.stdin.buffer, out=out, err=err)
    else:
        tar = Tar(args.archive_file, out=out, err=err)

    try:
        tar.open()
    except OSError as e:
        report("{}: Cannot open: {}".format(args.archive_file, e.strerror or e))
        report(NOT_RECOVERABLE)
        return EXIT_FAILURE

    try:
        with tar:
            if args.list:
                missing = tar.list(args.files)
            else:
                missing = tar.extract(args.files, args.verbose, args.directory)
    except TarError as e:
        report(e)
        report(e.fatal_message)
        return EXIT_FAILURE
    except BrokenPipeError:
        # the reader of our output went away, e.g. `mytar -t -f a.tar | head`
        if out is sys.stdout:
            devnull = os.open(os.devnull, os.O_WRONLY)
            os.dup2(devnull, sys.stdout.fileno())
        return EXIT_FAILURE
    except OSError as e:
        report("{}: Read error: {}".format(args.archive_file, e.strerror or e))
        report(NOT_RECOVERABLE)
        return EXIT_FAILURE

    for name in missing:
        report("{}: Not found in archive".format(name))
    if missing:
        report(PREVIOUS_ERRORS)
        return EXIT_FAILURE
    return EXIT_SUCCESS


def main(argv=None):
    sys.exit(run(parse_args(argv)))


if __name__ == "__main__":
    main()
