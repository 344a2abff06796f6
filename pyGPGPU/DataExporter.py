import os
from datetime import datetime

import numpy as np


def export(prefix, data, width, height, dirpath="Data", timestamp=None):
    """
    Write a row-major field as text lines `x y value` (x fastest) to `<dirpath>/<prefix>_<YYYYmmddHHMMSS>.txt`.

    Returns:
        str: path of the written file
    """
    data = np.asarray(data).reshape(-1)
    if data.size != width * height:
        raise ValueError(f"DataExporter::export() got {data.size} values for {width}x{height} field")
    if timestamp is None:
        timestamp = datetime.now()
    os.makedirs(dirpath, exist_ok=True)
    fname = os.path.join(dirpath, f"{prefix}_{timestamp.strftime('%Y%m%d%H%M%S')}.txt")
    iy, ix = np.mgrid[0:height, 0:width]
    table = np.column_stack((ix.ravel(), iy.ravel(), data))
    np.savetxt(fname, table, fmt=["%d", "%d", "%.8g"], delimiter=" ")
    print(f"DataExporter::export() Export has finished: {fname}")
    return fname


def load(fname, width, height):
    """ Read a file written by export() back to an array of shape (height, width) """
    table = np.loadtxt(fname, ndmin=2)
    if table.shape[0] != width * height:
        raise ValueError(f"DataExporter::load() {fname} has {table.shape[0]} lines, expected {width}x{height}")
    out = np.zeros((height, width), dtype=np.float32)
    out[table[:, 1].astype(int), table[:, 0].astype(int)] = table[:, 2]
    return out
