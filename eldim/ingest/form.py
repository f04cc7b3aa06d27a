"""Upload Form - streaming multipart/form-data reader

Self-Explanatory: Splits an upload body into its small text fields and the file part.
Why: request.form() reads and spools the whole body before the handler runs,
so a caller could not be rejected, nor the size ceiling enforced, until every
byte had been accepted. Here the body is parsed while it arrives.
How: python-multipart's push parser. Callbacks only record events; feed()
turns them into field values and returns the file bytes of that chunk, so the
caller decides what to do with them (authenticate first, then buffer).

Only the part named `file` carries the payload. Every other part is a text
field, bounded in count and size.
"""

from typing import Dict, List, Optional, Tuple

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from eldim.errors import EncodingError

FILE_FIELD = "file"
MAX_FIELDS = 10
MAX_FIELD_BYTES = 64 * 1024


class UploadForm:
    def __init__(self, content_type: str):
        kind, params = parse_options_header(content_type)
        boundary = params.get(b"boundary")
        if kind != b"multipart/form-data" or not boundary:
            raise EncodingError("Upload must be sent as multipart/form-data")

        self.fields: Dict[str, str] = {}
        self.filename: Optional[str] = None
        self.file_started = False
        self.complete = False

        self._events: List[Tuple[str, bytes]] = []
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._headers: Dict[bytes, bytes] = {}
        self._part_name: Optional[str] = None
        self._part_data = bytearray()
        self._parts = 0

        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_end": self._on_end,
            },
        )

    # python-multipart callbacks; they run inside parser.write()

    def _on_part_begin(self):
        self._events.append(("part_begin", b""))

    def _on_part_data(self, data: bytes, start: int, end: int):
        self._events.append(("part_data", bytes(data[start:end])))

    def _on_part_end(self):
        self._events.append(("part_end", b""))

    def _on_header_field(self, data: bytes, start: int, end: int):
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int):
        self._header_value += data[start:end]

    def _on_header_end(self):
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field.clear()
        self._header_value.clear()

    def _on_headers_finished(self):
        self._events.append(("headers", b""))

    def _on_end(self):
        self._events.append(("end", b""))

    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> List[bytes]:
        """Parse one body chunk; returns the file bytes it contained"""
        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise EncodingError(f"Could not parse upload form: {e}")

        events, self._events = self._events, []
        file_data: List[bytes] = []
        for kind, data in events:
            if kind == "part_begin":
                self._headers = {}
                self._part_name = None
                self._part_data.clear()
            elif kind == "headers":
                self._start_part()
            elif kind == "part_data":
                if self._part_name == FILE_FIELD:
                    file_data.append(data)
                else:
                    self._part_data += data
                    if len(self._part_data) > MAX_FIELD_BYTES:
                        raise EncodingError(f"Form field '{self._part_name}' is too large")
            elif kind == "part_end":
                if self._part_name != FILE_FIELD:
                    self.fields[self._part_name] = self._part_data.decode("utf-8", errors="replace")
            elif kind == "end":
                self.complete = True
        return file_data

    def _start_part(self):
        disposition = self._headers.get(b"content-disposition", b"")
        _, options = parse_options_header(disposition)
        name = options.get(b"name")
        if name is None:
            raise EncodingError("Form part has no name")
        self._part_name = name.decode("utf-8", errors="replace")
        self._parts += 1
        if self._parts > MAX_FIELDS:
            raise EncodingError(f"Upload form has more than {MAX_FIELDS} parts")

        if self._part_name == FILE_FIELD:
            if self.file_started:
                raise EncodingError("Upload form has more than one file")
            self.file_started = True
            filename = options.get(b"filename")
            if filename is not None:
                self.filename = filename.decode("utf-8", errors="replace")

    def close(self):
        """Body is over; it must have been a complete form with a file"""
        self._parser.finalize()
        if not self.complete:
            raise EncodingError("Upload form ended before its closing boundary")
        if not self.file_started:
            raise EncodingError("Upload form has no 'file' field")

    def password(self) -> Optional[str]:
        return self.fields.get("password") or None
