"""
CRS sidecar codec (.prj).

The sidecar holds a single ESRI-flavoured WKT1 string. ESRI WKT carries no
axis metadata and is always read x=longitude, y=latitude, which is why
geometries are swapped to longitude-first before they reach the geometry
file.

Authority lookups are delegated to an injectable CrsResolver. The default
resolver is backed by pyproj.

Functions:
    crs_from_code: Build a CoordinateReferenceSystem with its native axis order
    decode_crs_sidecar: Sidecar text -> CRS (unknown sentinel on failure)
    encode_crs_sidecar: CRS -> sidecar text
"""

from typing import Optional, Protocol

from pyproj import CRS
from pyproj.enums import WktVersion
from pyproj.exceptions import CRSError

from core.schema import CoordinateReferenceSystem, UNKNOWN_CRS
from utils.logger import get_logger

logger = get_logger(__name__)

# Axis directions that put longitude / easting first
_EASTING_DIRECTIONS = {'east', 'west'}


class CrsResolver(Protocol):
    """Narrow CRS authority interface used by the codec."""

    def to_wkt(self, code: str) -> str:
        ...

    def from_wkt(self, text: str) -> Optional[str]:
        ...

    def native_lon_first(self, code: str) -> bool:
        ...


class PyprojCrsResolver:
    """CrsResolver backed by pyproj's PROJ database."""

    def __init__(self, min_confidence: int = 25):
        self.min_confidence = min_confidence

    def to_wkt(self, code: str) -> str:
        return CRS.from_user_input(code).to_wkt(WktVersion.WKT1_ESRI)

    def from_wkt(self, text: str) -> Optional[str]:
        crs = CRS.from_wkt(text)
        # Prefer EPSG codes over the ESRI aliases an ESRI WKT also matches
        authority = (crs.to_authority('EPSG', self.min_confidence)
                     or crs.to_authority(min_confidence=self.min_confidence))
        if authority is None:
            return None
        return f"{authority[0]}:{authority[1]}"

    def native_lon_first(self, code: str) -> bool:
        axes = CRS.from_user_input(code).axis_info
        if not axes:
            return True
        return axes[0].direction.lower() in _EASTING_DIRECTIONS


_default_resolver = None


def default_resolver() -> CrsResolver:
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = PyprojCrsResolver()
    return _default_resolver


def crs_from_code(code: str, resolver: Optional[CrsResolver] = None) -> CoordinateReferenceSystem:
    """
    Build a CRS for an authority code with the axis order the authority defines.

    EPSG:4326, for example, is natively latitude-first.
    """
    resolver = resolver or default_resolver()
    return CoordinateReferenceSystem(code, resolver.native_lon_first(code))


def decode_crs_sidecar(text: Optional[str],
                       resolver: Optional[CrsResolver] = None) -> CoordinateReferenceSystem:
    """
    Decode sidecar WKT into a longitude-first CRS.

    Never raises: a missing, empty or unrecognised definition yields the
    unknown-CRS sentinel (keeping the original text in ``wkt``), since the
    geometry is still usable without it.
    """
    if not text or not text.strip():
        return UNKNOWN_CRS

    resolver = resolver or default_resolver()
    text = text.strip()
    try:
        code = resolver.from_wkt(text)
    except (CRSError, ValueError) as e:
        logger.warning(f"Could not decode CRS sidecar: {e}")
        return CoordinateReferenceSystem(None, True, text)

    if code is None:
        logger.warning("CRS sidecar has no identifiable authority code")
    return CoordinateReferenceSystem(code, True, text)


def encode_crs_sidecar(crs: CoordinateReferenceSystem,
                       resolver: Optional[CrsResolver] = None) -> Optional[str]:
    """
    Encode a CRS as sidecar WKT.

    Returns None when there is nothing to write (unknown CRS without the text
    it was read from).

    Raises:
        CRSError: If the authority code is not known to the resolver
    """
    if crs.is_unknown:
        return crs.wkt
    resolver = resolver or default_resolver()
    return resolver.to_wkt(crs.code)
