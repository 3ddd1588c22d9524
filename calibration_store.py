"""
Persisted attenuation calibrations keyed by depth.

File layout:

    <?xml version='1.0' encoding='utf-8'?>
    <Attenuation>
      <Depth val="3.5">
        <Backscatter_Attenuation blue="0.1" green="0.2" red="0.3" />
        <Direct_Signal_Attenuation blue="0.4" green="0.5" red="0.6" />
      </Depth>
    </Attenuation>

Files whose Depth records are top-level siblings without a wrapping element
are read as well.
"""

import io
import logging
import os
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Tuple, Union

from attenuation_model import AttenuationCoefficients, quantize_depth
from underwater_scene import CHANNEL_NAMES


logger = logging.getLogger(__name__)

ROOT_TAG = 'Attenuation'
DEPTH_TAG = 'Depth'
BACKSCATTER_TAG = 'Backscatter_Attenuation'
DIRECT_SIGNAL_TAG = 'Direct_Signal_Attenuation'

_DECLARATION = re.compile(r'^\s*<\?xml[^>]*\?>', re.IGNORECASE)


class CalibrationLoadError(IOError):
    """Persisted calibration data could not be read."""


class MissingCalibrationError(KeyError):
    """No calibration is stored for the requested depth."""

    def __init__(self, depth: float, key: float):
        super().__init__(depth)
        self.depth = depth
        self.key = key

    def __str__(self):
        return f"No attenuation calibration stored for depth {self.depth} (key {self.key})"


class CalibrationStore:
    """
    Depth to attenuation coefficient table plus an output buffer for saving.

    The table is filled by load() or insert() and read by lookup(). New
    calibrations are appended with record() and written by save() in the order
    they were recorded.
    """

    def __init__(self):
        self._table: Dict[float, Tuple[float, ...]] = {}
        self._records: List[Tuple[float, Tuple[float, ...]]] = []

    def __len__(self):
        return len(self._table)

    def __contains__(self, depth):
        return quantize_depth(depth) in self._table

    def depths(self) -> List[float]:
        return list(self._table.keys())

    @property
    def records(self) -> List[Tuple[float, Tuple[float, ...]]]:
        return list(self._records)

    def insert(self, depth: float, coefficients: AttenuationCoefficients):
        key = float(depth)
        if key * 2 != round(key * 2):
            logger.warning(f"Depth key {key} is not a multiple of 0.5, lookup() cannot reach it")
        if key in self._table:
            logger.warning(f"Replacing stored attenuation values for depth {key}")
        self._table[key] = coefficients.as_tuple()

    def lookup(self, depth: float) -> AttenuationCoefficients:
        """
        Coefficients stored for the quantized depth.

        Raises:
            MissingCalibrationError: If nothing is stored under the key
        """
        key = quantize_depth(depth)
        try:
            values = self._table[key]
        except KeyError:
            raise MissingCalibrationError(depth, key) from None
        return AttenuationCoefficients.from_tuple(values)

    def record(self, depth: float, coefficients: AttenuationCoefficients):
        self._records.append((float(depth), coefficients.as_tuple()))

    # --------------------------------------------------------------------------
    # Persistence
    # --------------------------------------------------------------------------

    def load(self, source: Union[str, os.PathLike, io.IOBase]) -> int:
        """
        Add the calibrations of a persisted file to the table.

        Args:
            source: Path or readable text/binary stream

        Returns:
            Number of depth records read

        Raises:
            CalibrationLoadError: If the source is unreadable or malformed
        """
        is_path = isinstance(source, (str, os.PathLike))
        name = os.fspath(source) if is_path else getattr(source, 'name', '<stream>')
        try:
            if is_path:
                with open(source, 'rb') as f:
                    content = f.read()
            else:
                content = source.read()
        except OSError as e:
            raise CalibrationLoadError(f"Could not load attenuation input file {name}: {e}") from e

        if isinstance(content, bytes):
            content = content.decode('utf-8', errors='replace')

        # Wrap so files with several top-level Depth records parse too
        body = _DECLARATION.sub('', content, count=1)
        try:
            root = ET.fromstring(f"<_document>{body}</_document>")
        except ET.ParseError as e:
            raise CalibrationLoadError(f"Could not parse attenuation input file {name}: {e}") from e

        depth_nodes = root.findall(DEPTH_TAG) + root.findall(f"{ROOT_TAG}/{DEPTH_TAG}")
        if not depth_nodes:
            raise CalibrationLoadError(f"Attenuation input file {name} has no <{DEPTH_TAG}> records")
        for depth_node in depth_nodes:
            depth = _float_attribute(depth_node, 'val', name)
            backscatter = _channel_values(depth_node, BACKSCATTER_TAG, depth, name)
            direct_signal = _channel_values(depth_node, DIRECT_SIGNAL_TAG, depth, name)
            self.insert(depth, AttenuationCoefficients(backscatter, direct_signal))

        logger.info(f"Added {len(depth_nodes)} prior attenuation values from {name}")
        return len(depth_nodes)

    def save(self, sink: Union[str, os.PathLike, io.IOBase]):
        """
        Write the recorded calibrations.

        Args:
            sink: Path or writable binary stream
        """
        root = ET.Element(ROOT_TAG)
        for depth, values in self._records:
            data_depth = ET.SubElement(root, DEPTH_TAG, val=repr(depth))
            for tag, channel_values in ((BACKSCATTER_TAG, values[:3]), (DIRECT_SIGNAL_TAG, values[3:])):
                ET.SubElement(data_depth, tag, {
                    channel: repr(float(value)) for channel, value in zip(CHANNEL_NAMES, channel_values)
                })

        tree = ET.ElementTree(root)
        ET.indent(tree)
        tree.write(sink, encoding='utf-8', xml_declaration=True)
        logger.info(f"Saved {len(self._records)} attenuation records")


def _float_attribute(node: ET.Element, attribute: str, source_name: str) -> float:
    value = node.get(attribute)
    if value is None:
        raise CalibrationLoadError(f"{source_name}: <{node.tag}> is missing attribute '{attribute}'")
    try:
        return float(value)
    except ValueError:
        raise CalibrationLoadError(
            f"{source_name}: <{node.tag}> attribute '{attribute}' is not a number: {value!r}") from None


def _channel_values(depth_node: ET.Element, tag: str, depth: float, source_name: str) -> List[float]:
    node = depth_node.find(tag)
    if node is None:
        raise CalibrationLoadError(f"{source_name}: depth {depth} has no <{tag}> record")
    return [_float_attribute(node, channel, source_name) for channel in CHANNEL_NAMES]
