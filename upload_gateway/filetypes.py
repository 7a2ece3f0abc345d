# filetypes.py
#
# Coarse file type classification by extension, using the type codes the
# backend's blockchain file records expect.

import os

from upload_gateway.errors import ValidationError

TYPE_BINARY = 0
TYPE_TEXT = 1
TYPE_PICTURE = 2
TYPE_VIDEO = 3
TYPE_AUDIO = 4
TYPE_DOCUMENT = 5
TYPE_EXECUTABLE = 6
TYPE_CONTAINER = 7
TYPE_COMPRESSED = 8
TYPE_FOLDER = 9
TYPE_EBOOK = 10

# Unknown extensions are recorded as plain binary.
TYPE_UNKNOWN = TYPE_BINARY

TYPE_NAMES = {
    TYPE_BINARY: "binary",
    TYPE_TEXT: "text",
    TYPE_PICTURE: "picture",
    TYPE_VIDEO: "video",
    TYPE_AUDIO: "audio",
    TYPE_DOCUMENT: "document",
    TYPE_EXECUTABLE: "executable",
    TYPE_CONTAINER: "container",
    TYPE_COMPRESSED: "compressed",
    TYPE_FOLDER: "folder",
    TYPE_EBOOK: "ebook",
}

_EXTENSIONS = {
    TYPE_TEXT: {
        "txt", "md", "csv", "tsv", "log", "json", "xml", "yaml", "yml", "ini",
        "cfg", "conf", "html", "htm", "css", "js", "ts", "py", "go", "c", "h",
        "cpp", "java", "rs", "sh", "sql", "toml",
    },
    TYPE_PICTURE: {
        "jpg", "jpeg", "png", "gif", "bmp", "svg", "webp", "tif", "tiff", "ico",
        "heic", "raw", "psd",
    },
    TYPE_VIDEO: {"mp4", "mkv", "avi", "mov", "wmv", "webm", "flv", "m4v", "mpg", "mpeg", "3gp"},
    TYPE_AUDIO: {"mp3", "wav", "flac", "aac", "ogg", "oga", "m4a", "wma", "opus", "mid", "midi"},
    TYPE_DOCUMENT: {
        "pdf", "doc", "docx", "odt", "rtf", "xls", "xlsx", "ods", "ppt", "pptx",
        "odp", "pages", "numbers", "key",
    },
    TYPE_EXECUTABLE: {"exe", "msi", "dll", "so", "bin", "apk", "app", "deb", "rpm", "com", "bat"},
    TYPE_CONTAINER: {"iso", "img", "dmg", "vmdk", "vdi", "qcow2", "tar"},
    TYPE_COMPRESSED: {"zip", "rar", "7z", "gz", "tgz", "bz2", "xz", "zst", "lz", "lzma", "cab"},
    TYPE_EBOOK: {"epub", "mobi", "azw", "azw3", "fb2", "djvu", "cbz", "cbr"},
}

EXTENSION_TYPES = {ext: file_type for file_type, exts in _EXTENSIONS.items() for ext in exts}


def classify(filename):
    """
    Return the type code for ``filename``.

    An empty name (anonymous or command line uploads) and an unknown or missing
    extension both map to TYPE_UNKNOWN. Names that cannot be classified
    safely raise ValidationError rather than guessing.
    """
    if filename is None:
        return TYPE_UNKNOWN
    if not isinstance(filename, str):
        raise ValidationError("File name must be text", stage="classify")

    name = filename.strip()
    if not name:
        return TYPE_UNKNOWN
    if "/" in name or "\\" in name:
        raise ValidationError(f"Cannot classify file name with a path: {filename!r}", stage="classify")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in name):
        raise ValidationError("Cannot classify file name with control characters", stage="classify")
    if not name.strip("."):
        raise ValidationError(f"Cannot classify file name {filename!r}", stage="classify")

    _, ext = os.path.splitext(name)
    ext = ext[1:].lower()
    if not ext:
        return TYPE_UNKNOWN
    return EXTENSION_TYPES.get(ext, TYPE_UNKNOWN)


def type_name(file_type):
    return TYPE_NAMES.get(file_type, TYPE_NAMES[TYPE_UNKNOWN])
