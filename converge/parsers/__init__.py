from typing import Iterable

from converge.detect import detect_format
from converge.models.resource import Configuration
from converge.parsers import native, terraform

PARSERS = {
    "terraform": terraform.parse_file,
    "native": native.parse_file,
}


def parse_files(file_paths: Iterable[str]) -> Configuration:
    """Parse every recognised configuration file into one desired model."""
    config = Configuration()
    for fp in file_paths:
        parse = PARSERS.get(detect_format(fp))
        if parse is not None:
            config.extend(parse(fp))
    return config
