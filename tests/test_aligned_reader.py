import threading

import pytest

from vamana.aligned_reader import MAX_EVENTS, AlignedFileReader, AlignedRead, ReaderError

DATA = bytes(range(256)) * 8


@pytest.fixture
def data_file(tmp_path):
    path = tmp_path / "blocks.bin"
    path.write_bytes(DATA)
    return path


@pytest.fixture
def reader(data_file):
    r = AlignedFileReader()
    r.open(data_file)
    r.register_thread()
    yield r
    r.close()


def test_single_aligned_read(reader):
    buf = bytearray(512)
    reader.read([AlignedRead(512, 512, buf)], reader.get_ctx())
    assert bytes(buf) == DATA[512:1024]


def test_several_reads(reader):
    first = bytearray(512)
    second = bytearray(512)
    third = bytearray(512)
    fourth = bytearray(512)
    requests = [
        AlignedRead(0, 512, first),
        AlignedRead(512, 512, second),
        AlignedRead(1024, 512, third),
        AlignedRead(1536, 512, fourth),
    ]
    reader.read(requests, reader.get_ctx())
    assert bytes(first) == DATA[0:512]
    assert bytes(second) == DATA[512:1024]
    assert bytes(third) == DATA[1024:1536]
    assert bytes(fourth) == DATA[1536:2048]


def test_more_requests_than_one_batch(reader):
    count = MAX_EVENTS + 100
    bufs = [bytearray(1) for _ in range(count)]
    requests = [AlignedRead(i % len(DATA), 1, b) for i, b in enumerate(bufs)]
    reader.read(requests, reader.get_ctx())
    assert [b[0] for b in bufs] == [DATA[i % len(DATA)] for i in range(count)]


def test_read_into_memoryview_slice(reader):
    backing = bytearray(1024)
    view = memoryview(backing)[512:]
    reader.read([AlignedRead(0, 512, view)], reader.get_ctx())
    assert bytes(view) == DATA[:512]
    assert bytes(backing[512:]) == DATA[:512]
    assert bytes(backing[:512]) == bytes(512)


def test_buffer_too_small(reader):
    with pytest.raises(ReaderError):
        reader.read([AlignedRead(0, 512, bytearray(10))], reader.get_ctx())


def test_get_ctx_unregistered(data_file):
    r = AlignedFileReader()
    with pytest.raises(ReaderError):
        r.get_ctx()


def test_register_twice_keeps_context(reader):
    first = reader.get_ctx()
    reader.register_thread()
    assert reader.get_ctx() is first


def test_deregister_removes_context(reader):
    reader.deregister_thread()
    with pytest.raises(ReaderError):
        reader.get_ctx()


def test_deregister_unregistered_raises():
    r = AlignedFileReader()
    with pytest.raises(ReaderError):
        r.deregister_thread()


def test_stale_context_rejected(reader):
    ctx = reader.get_ctx()
    reader.deregister_thread()
    with pytest.raises(ReaderError):
        reader.read([AlignedRead(0, 512, bytearray(512))], ctx)


def test_contexts_are_per_thread(reader):
    seen = {}

    def work():
        reader.register_thread()
        seen["ctx"] = reader.get_ctx()
        seen["ident"] = threading.get_ident()
        buf = bytearray(256)
        reader.read([AlignedRead(256, 256, buf)], seen["ctx"])
        seen["data"] = bytes(buf)
        reader.deregister_thread()

    thread = threading.Thread(target=work)
    thread.start()
    thread.join()
    assert seen["ctx"].thread_id == seen["ident"]
    assert seen["data"] == DATA[256:512]
    assert reader.get_ctx().thread_id == threading.get_ident()


def test_open_missing_file(tmp_path):
    r = AlignedFileReader()
    with pytest.raises(ReaderError):
        r.open(tmp_path / "missing.bin")


def test_read_when_not_open():
    r = AlignedFileReader()
    r.register_thread()
    with pytest.raises(ReaderError):
        r.read([AlignedRead(0, 1, bytearray(1))], r.get_ctx())


def test_context_manager_closes(data_file):
    with AlignedFileReader() as r:
        r.open(data_file)
        r.register_thread()
        buf = bytearray(4)
        r.read([AlignedRead(0, 4, buf)], r.get_ctx())
        assert bytes(buf) == DATA[:4]
    with pytest.raises(ReaderError):
        r.read([AlignedRead(0, 4, bytearray(4))], r.get_ctx())