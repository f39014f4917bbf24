"""debforge - build .deb packages and container rootfs images from declarative package specs."""

__version__ = "0.1.0"
