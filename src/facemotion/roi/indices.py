from __future__ import annotations

from typing import Iterable

from facemotion.config import RoiKind, normalize_roi_kind

# fmt: off
EYE_REGION = [168, 193, 245, 128, 121, 120, 119, 118, 117, 111, 143, 139, 71, 68, 104, 69, 108, 151, 337, 299, 333, 298, 301, 368, 372, 340, 346, 347, 348, 349, 350, 357, 465, 417, 9, 107, 66, 105, 63, 70, 156, 336, 296, 334, 293, 300, 383, 8, 55, 65, 52, 53, 46, 124, 35, 31, 228, 229, 230, 231, 232, 233, 244, 189, 285, 295, 282, 283, 276, 353, 265, 221, 222, 223, 224, 225, 113, 226, 25, 110, 24, 23, 22, 26, 112, 243, 190, 56, 28, 27, 29, 30, 247, 130, 33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246, 441, 442, 443, 444, 445, 342, 446, 261, 448, 449, 450, 451, 452, 453, 464, 413, 286, 258, 257, 259, 260, 467, 359, 255, 339, 254, 253, 252, 256, 341, 463, 414, 384, 385, 386, 387, 388, 466, 263, 249, 390, 373, 374, 380, 381, 382, 362, 308]  # noqa: E501
LIPS = [0, 13, 14, 17, 37, 39, 40, 61, 78, 80, 81, 82, 84, 87, 88, 91, 95, 146, 178, 181, 185, 191, 267, 269, 270, 291, 308, 310, 311, 312, 314, 317, 318, 321, 324, 375, 402, 405, 409, 415]  # noqa: E501
FACE_OVAL = [10, 338, 297, 332, 284, 251, 389, 356, 454, 323, 361, 288, 397, 365, 379, 378, 400, 377, 152, 148, 176, 149, 150, 136, 172, 58, 132, 93, 234, 127, 162, 21, 54, 103, 67, 109]  # noqa: E501
# fmt: on

LANDMARK_COUNT = 478
ALL_LANDMARKS = list(range(LANDMARK_COUNT))


def dedupe_preserve_order(values: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    out: list[int] = []
    for value in values:
        idx = int(value)
        if idx not in seen:
            seen.add(idx)
            out.append(idx)
    return out


ROI_LANDMARKS: dict[RoiKind, list[int]] = {
    RoiKind.eye: dedupe_preserve_order(EYE_REGION),
    RoiKind.smile: list(LIPS),
    RoiKind.tongue: list(LIPS),
    RoiKind.all: list(ALL_LANDMARKS),
}


def landmark_indices_for(kind: RoiKind | str) -> list[int]:
    """Landmark indices whose displacement values are exported for ``kind``."""
    return list(ROI_LANDMARKS[normalize_roi_kind(kind)])
