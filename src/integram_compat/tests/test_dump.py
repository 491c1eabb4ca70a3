import io
import zipfile

from integram_compat import basetypes, dump
from integram_compat.dump import BOM, DumpRow
from integram_compat.tests.fixtures import TEST_DB


ROWS = [
    DumpRow(1, 0, 1, 1, "Object"),
    DumpRow(2, 0, 2, 0, "HTML"),
    DumpRow(3, 0, 3, 0, "SHORT"),
    DumpRow(500, 1, 18, 1, "d"),
    DumpRow(501, 500, 20, 1, "hash"),
    DumpRow(502, 500, 125, 7, "multi\nline\r\nvalue"),
    DumpRow(540, 1, 18, 3, "semi;colon"),
]


class TestBackupCodec:

    def test_round_trip(self):
        assert dump.decode_text(dump.encode_rows(ROWS)) == ROWS

    def test_output_starts_with_bom(self):
        assert dump.encode_rows(ROWS).startswith(BOM)

    def test_one_line_per_row(self):
        text = dump.encode_rows(ROWS)
        assert text[len(BOM):].count("\n") == len(ROWS)

    def test_consecutive_id_with_same_parent_is_shortened(self):
        lines = dump.encode_rows(ROWS)[len(BOM):].split("\n")
        # 502 follows 501 under the same parent
        assert lines[5].startswith("/")

    def test_ord_one_is_omitted(self):
        line = dump.BackupEncoder().encode(DumpRow(1, 0, 1, 1, "Object"))
        assert line == ";0;1;;Object\n"

    def test_field_encoding(self):
        encoder = dump.BackupEncoder()
        encoder.encode(DumpRow(1, 0, 1, 1, "Object"))
        assert encoder.encode(DumpRow(40, 0, 1, 2, "x")) == "13;;;2;x\n"

    def test_decoder_strips_byte_order_mark_variants(self):
        text = dump.encode_rows(ROWS)[len(BOM):]
        assert dump.decode_text("\xef\xbb\xbf" + text) == ROWS


class TestCsvEscaping:

    def test_semicolon_and_newline(self):
        assert dump.mask_csv("foo;bar\nbaz") == r"foo\;bar\nbaz"

    def test_carriage_return(self):
        assert dump.mask_csv("a\rb") == r"a\rb"

    def test_none(self):
        assert dump.mask_csv(None) == ""


class TestArchives:

    def test_zip_contains_single_member(self):
        data = dump.zip_chunks("mydb.dmp", [BOM, ";0;1;;Object\n"])
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            assert archive.namelist() == ["mydb.dmp"]

    def test_read_dump_archive_from_zip(self):
        text = dump.encode_rows(ROWS)
        assert dump.decode_text(dump.read_dump_archive(dump.zip_single("x.dmp", text))) == ROWS

    def test_read_dump_archive_plain_text(self):
        text = dump.encode_rows(ROWS)
        assert dump.decode_text(dump.read_dump_archive(text.encode("utf-8"))) == ROWS


class TestStoreDumps:

    def test_backup_then_restore_into_empty_table(self, store):
        client_type = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "Client")
        store.insert(TEST_DB, 1, 1, client_type, "Acme;\nInc")

        text = "".join(dump.backup(store, TEST_DB, page_size=7))

        store.create("copy")
        count = dump.restore(store, "copy", text)

        original = [tuple(row) for page in store.iter_pages(TEST_DB, 1000) for row in page]
        copied = [tuple(row) for page in store.iter_pages("copy", 1000) for row in page]
        assert count == len(original)
        assert copied == original

    def test_restore_keeps_existing_rows(self, store):
        text = dump.encode_rows([DumpRow(1, 0, 1, 1, "Changed")])
        dump.restore(store, TEST_DB, text)
        assert store.get(TEST_DB, 1).val == "Object"

    def test_csv_all_blocks(self, store):
        client_type = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "Client")
        city = store.insert(TEST_DB, client_type, 1, basetypes.CHARS, ":!NULL:City")
        store.insert(TEST_DB, client_type, 2, basetypes.NUMBER, "Size")
        acme = store.insert(TEST_DB, 1, 1, client_type, "Acme;Inc")
        store.insert(TEST_DB, acme, 1, city, "NYC")

        text = "".join(dump.csv_all(store, TEST_DB))

        assert text.startswith(BOM)
        assert "Client;City;Size\nAcme" + r"\;" + "Inc;NYC;\n\n" in text
