"""
llama-session :: GGUF Tests

Tests for:
  - Writer → reader metadata types (scalars, strings, arrays)
  - Tensor dims (innermost first on disk, torch order in memory)
  - Alignment handling
  - Legacy magics, bad versions, truncated files

INL - 2025
"""

import os
import struct
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_session.core.gguf import (
    GGUF_MAGIC, GGUF_TYPE_ARRAY, GGUF_TYPE_BOOL, GGUF_TYPE_FLOAT32, GGUF_TYPE_INT32,
    GGUF_TYPE_STRING, GGUF_TYPE_UINT32, GGUFCorruptError, GGUFReader, GGUFUnsupportedError,
    GGUFWriter,
)
from llama_session.core.quantization import Q8_0


def _write(path, metadata=(), tensors=(), alignment=32):
    w = GGUFWriter(str(path), alignment=alignment)
    for key, value in metadata:
        w.add_metadata(key, value)
    for name, arr, type_id in tensors:
        w.add_tensor(name, arr, type_id=type_id)
    w.write()
    return str(path)


# =========================================================================
# Metadata
# =========================================================================

class TestMetadata:
    def test_scalar_types(self, tmp_path):
        path = _write(tmp_path / "m.gguf", metadata=[
            ("a.str", "llama"),
            ("a.uint", 4096),
            ("a.neg", -3),
            ("a.float", 0.5),
            ("a.bool", True),
        ])
        with GGUFReader(path) as r:
            assert r.version == 3
            assert r.metadata["a.str"] == "llama"
            assert r.metadata["a.uint"] == 4096
            assert r.metadata["a.neg"] == -3
            assert r.metadata["a.float"] == pytest.approx(0.5)
            assert r.metadata["a.bool"] is True
            assert r.metadata_types["a.str"] == GGUF_TYPE_STRING
            assert r.metadata_types["a.uint"] == GGUF_TYPE_UINT32
            assert r.metadata_types["a.neg"] == GGUF_TYPE_INT32
            assert r.metadata_types["a.float"] == GGUF_TYPE_FLOAT32
            assert r.metadata_types["a.bool"] == GGUF_TYPE_BOOL

    def test_arrays(self, tmp_path):
        path = _write(tmp_path / "m.gguf", metadata=[
            ("t.tokens", ["<unk>", "▁Hello", "<0x0A>"]),
            ("t.scores", [0.0, -1.5, -2.25]),
            ("t.types", [2, 1, -6]),
        ])
        with GGUFReader(path) as r:
            assert r.metadata["t.tokens"] == ["<unk>", "▁Hello", "<0x0A>"]
            assert r.metadata["t.scores"] == pytest.approx([0.0, -1.5, -2.25])
            assert r.metadata["t.types"] == [2, 1, -6]
            assert r.metadata_types["t.tokens"] == GGUF_TYPE_ARRAY

    def test_explicit_element_type(self, tmp_path):
        w = GGUFWriter(str(tmp_path / "m.gguf"))
        w.add_metadata("t.types", [1, 6], elem_type=GGUF_TYPE_INT32)
        w.write()
        with GGUFReader(str(tmp_path / "m.gguf")) as r:
            assert r.metadata["t.types"] == [1, 6]

    def test_unsupported_value(self, tmp_path):
        w = GGUFWriter(str(tmp_path / "m.gguf"))
        with pytest.raises(TypeError):
            w.add_metadata("x", {"a": 1})


# =========================================================================
# Tensors
# =========================================================================

class TestTensors:
    def test_shape_order(self, tmp_path):
        arr = np.arange(12, dtype=np.float32).reshape(3, 4)
        path = _write(tmp_path / "t.gguf", tensors=[("w", arr, 0)])
        with GGUFReader(path) as r:
            info = r.tensors["w"]
            assert info.dims == (4, 3)
            assert info.shape == (3, 4)
            assert info.n_elements == 12
            assert info.type_name == "F32"
            np.testing.assert_array_equal(r.load_tensor("w"), arr)

    def test_data_offsets_aligned(self, tmp_path):
        a = np.ones(5, dtype=np.float32)
        b = np.full((2, 3), 2.0, dtype=np.float32)
        path = _write(tmp_path / "t.gguf", tensors=[("a", a, 0), ("b", b, 0)])
        with GGUFReader(path) as r:
            for info in r.tensors.values():
                assert info.data_offset % r.alignment == 0
            np.testing.assert_array_equal(r.load_tensor("a"), a)
            np.testing.assert_array_equal(r.load_tensor("b"), b)

    def test_custom_alignment(self, tmp_path):
        a = np.ones(3, dtype=np.float32)
        path = _write(tmp_path / "t.gguf", tensors=[("a", a, 0), ("b", a * 2, 0)], alignment=64)
        with GGUFReader(path) as r:
            assert r.alignment == 64
            assert r.metadata["general.alignment"] == 64
            assert r.tensors["b"].data_offset % 64 == 0
            np.testing.assert_array_equal(r.load_tensor("b"), a * 2)

    def test_quantized_tensor(self, tmp_path):
        rng = np.random.RandomState(0)
        arr = rng.randn(4, 64).astype(np.float32)
        path = _write(tmp_path / "q.gguf", tensors=[("w", arr, Q8_0.type_id)])
        with GGUFReader(path) as r:
            assert r.tensors["w"].type_name == "Q8_0"
            assert r.tensors["w"].n_bytes == Q8_0.nbytes(arr.size)
            np.testing.assert_allclose(r.load_tensor("w"), arr, atol=0.05)

    def test_without_mmap(self, tmp_path):
        arr = np.arange(6, dtype=np.float32)
        path = _write(tmp_path / "t.gguf", tensors=[("w", arr, 0)])
        with GGUFReader(path, use_mmap=False) as r:
            np.testing.assert_array_equal(r.load_tensor("w"), arr)

    def test_unaligned_block_rejected_by_writer(self, tmp_path):
        w = GGUFWriter(str(tmp_path / "q.gguf"))
        with pytest.raises(ValueError):
            w.add_tensor("w", np.zeros(33, dtype=np.float32), type_id=Q8_0.type_id)

    def test_summary(self, tmp_path):
        path = _write(tmp_path / "t.gguf", tensors=[("w", np.zeros((2, 2), dtype=np.float32), 0)])
        with GGUFReader(path) as r:
            text = r.summary()
        assert "GGUF v3" in text
        assert "w" in text


# =========================================================================
# Malformed files
# =========================================================================

class TestMalformed:
    @pytest.mark.parametrize("magic", [b"lmgg", b"fmgg", b"tjgg"])
    def test_legacy_magic(self, tmp_path, magic):
        p = tmp_path / "old.bin"
        p.write_bytes(magic + b"\x01\x00\x00\x00" + b"\x00" * 64)
        with pytest.raises(GGUFUnsupportedError, match="Legacy"):
            GGUFReader(str(p))

    def test_not_gguf(self, tmp_path):
        p = tmp_path / "x.bin"
        p.write_bytes(b"NOPE" + b"\x00" * 32)
        with pytest.raises(GGUFUnsupportedError):
            GGUFReader(str(p))

    def test_version_1_refused(self, tmp_path):
        p = tmp_path / "v1.gguf"
        p.write_bytes(GGUF_MAGIC + struct.pack("<IQQ", 1, 0, 0))
        with pytest.raises(GGUFUnsupportedError, match="version"):
            GGUFReader(str(p))

    def test_version_2_accepted(self, tmp_path):
        p = tmp_path / "v2.gguf"
        p.write_bytes(GGUF_MAGIC + struct.pack("<IQQ", 2, 0, 0))
        with GGUFReader(str(p)) as r:
            assert r.version == 2
            assert r.tensors == {}

    def test_truncated_header(self, tmp_path):
        path = _write(tmp_path / "t.gguf", metadata=[("general.name", "tiny")])
        data = open(path, "rb").read()
        p = tmp_path / "cut.gguf"
        p.write_bytes(data[:30])
        with pytest.raises(GGUFCorruptError):
            GGUFReader(str(p))

    def test_truncated_tensor_data(self, tmp_path):
        path = _write(tmp_path / "t.gguf", tensors=[("w", np.ones(64, dtype=np.float32), 0)])
        data = open(path, "rb").read()
        p = tmp_path / "cut.gguf"
        p.write_bytes(data[:-16])
        with pytest.raises(GGUFCorruptError, match="past end"):
            GGUFReader(str(p))

    def test_empty_file(self, tmp_path):
        p = tmp_path / "empty.gguf"
        p.write_bytes(b"")
        with pytest.raises(GGUFCorruptError):
            GGUFReader(str(p))

    def test_bad_alignment(self, tmp_path):
        w = GGUFWriter(str(tmp_path / "a.gguf"))
        w.add_metadata("general.alignment", 24, GGUF_TYPE_UINT32)
        w.write()
        with pytest.raises(GGUFCorruptError, match="power of two"):
            GGUFReader(str(tmp_path / "a.gguf"))
