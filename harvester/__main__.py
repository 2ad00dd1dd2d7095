"""
Module entry point for: python -m harvester

Allows running the harvester directly as a module:
    python -m harvester harvest <output_dir> [options]
    python -m harvester extract <pdf_path> [options]
    python -m harvester recognize <image_path> --category <tag>
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
