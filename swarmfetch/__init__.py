"""A small BitTorrent client: bencode, metainfo parsing, tracker announces and peer downloads."""

__version__ = "0.1.0"