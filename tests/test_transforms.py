import numpy as np
import pandas as pd
import pytest

from incremental.transforms import (
    handle_missing_values, handle_outliers, normalize_whitespace, standardize_dates,
    map_categories, convert_type, normalize_encoding, standardize_numbers,
    apply_business_rule, apply_transform, resolve_columns, detect_delimiter,
    read_table, write_table, build_category_mapping, parse_number
)


def test_missing_value_actions():
    df = pd.DataFrame({"x": [1.0, np.nan, 3.0, 10.0], "s": ["a", "b", "N/A", "a"]})

    out, affected = handle_missing_values(df, ["x"], {"action": "impute_median"})
    assert out["x"].tolist() == [1.0, 3.0, 3.0, 10.0]
    assert affected == 1

    out, _ = handle_missing_values(df, ["s"], {"action": "impute_mode"})
    assert out["s"].tolist() == ["a", "b", "a", "a"]

    out, affected = handle_missing_values(df, ["x", "s"], {"action": "delete"})
    assert len(out) == 2
    assert affected == 2

    out, _ = handle_missing_values(df, ["x"], {"action": "impute_custom", "custom_value": "0"})
    assert out["x"].tolist() == [1.0, 0.0, 3.0, 10.0]

    with pytest.raises(ValueError):
        handle_missing_values(df, ["x"], {"action": "guess"})


def test_outlier_actions():
    df = pd.DataFrame({"v": list(range(1, 99)) + [500, 600]})

    removed, affected = handle_outliers(df, ["v"], {"action": "remove"})
    assert len(removed) == 98
    assert affected == 2

    flagged, _ = handle_outliers(df, ["v"], {"action": "flag"})
    assert flagged["v_outlier"].sum() == 2

    capped, affected = handle_outliers(df, ["v"], {"action": "cap", "lower_pct": 1, "upper_pct": 99})
    assert capped["v"].max() < 600
    assert affected > 0

    kept, affected = handle_outliers(df, ["v"], {"action": "keep"})
    assert kept.equals(df)
    assert affected == 0


def test_whitespace_and_dates(messy_df):
    out, affected = normalize_whitespace(messy_df, ["Name"], {})
    assert out["Name"].tolist()[:2] == ["Alice", "Bob"]
    assert affected == 2

    out, affected = standardize_dates(messy_df, ["Joined"], {})
    assert out["Joined"].tolist() == [
        "2023-01-05", "2023-02-10", "2023-03-15", "2023-04-01", "2023-05-04", "2023-06-30"
    ]
    assert affected == 2


def test_category_mapping(messy_df):
    out, affected = map_categories(messy_df, ["City"], {"merge_case": True, "similarity_threshold": None})
    assert set(out["City"]) == {"PARIS", "London", "Berlin"}
    assert affected == 3

    preserved, _ = map_categories(messy_df, ["City"], {"preserve_original": True})
    assert preserved["City_original"].tolist() == messy_df["City"].tolist()


def test_category_mapping_prefers_most_frequent_spelling():
    series = pd.Series(["Electronics"] * 5 + ["Electronic"] * 2 + ["electronics"])
    mapping = build_category_mapping(series)
    assert mapping == {"Electronics": "Electronics", "Electronic": "Electronics", "electronics": "Electronics"}


def test_type_conversion(messy_df):
    out, affected = convert_type(messy_df, ["Active"], {"target_type": "boolean"})
    assert out["Active"].tolist() == [True, False, True, False, True, False]
    assert affected == 6

    df = pd.DataFrame({"amount": ["1", "2", "oops", None]})
    out, affected = convert_type(df, ["amount"], {"target_type": "numeric", "action": "convert"})
    assert out["amount"].tolist()[:2] == [1.0, 2.0]
    assert out["amount"].isna().sum() == 2
    assert affected == 1

    out, affected = convert_type(df, ["amount"], {"target_type": "numeric", "action": "delete"})
    assert len(out) == 3
    assert affected == 1


def test_numbers_and_encoding(messy_df):
    out, affected = standardize_numbers(messy_df, ["Score"], {})
    assert out["Score"].tolist() == [1200.0, 3400.0, 560.0, 7800.0, 900.0, 1000.0]
    assert affected == 6
    assert parse_number("1.234,5") == 1234.5
    assert parse_number("12,5") == 12.5

    df = pd.DataFrame({"w": ["cafÃ©", "ok", "bad\ufffd"]})
    out, affected = normalize_encoding(df, ["w"], {})
    assert out["w"].tolist() == ["café", "ok", "bad"]
    assert affected == 2


def test_business_rule_actions():
    df = pd.DataFrame({"q": [5, -1, 3, -2]})

    out, affected = apply_business_rule(df, ["q"], {"constraint": ">= 0", "action": "nullify"})
    assert out["q"].isna().sum() == 2
    assert affected == 2

    out, _ = apply_business_rule(df, ["q"], {"constraint": ">= 0", "action": "replace", "custom_value": "0"})
    assert out["q"].tolist() == [5, 0, 3, 0]

    out, _ = apply_business_rule(df, ["q"], {"constraint": ">= 0", "action": "delete"})
    assert out["q"].tolist() == [5, 3]

    with pytest.raises(ValueError):
        apply_business_rule(df, ["q"], {"constraint": "positive", "action": "delete"})


def test_transform_registry_and_column_resolution():
    df = pd.DataFrame({"Name": [" a"]})
    out, _ = apply_transform(df, "whitespace_normalization", ["Name"], {})
    assert out["Name"].tolist() == ["a"]
    with pytest.raises(ValueError):
        apply_transform(df, "teleport", ["Name"], {})

    assert resolve_columns(df, ["name", "age"]) == (["Name"], ["age"])


def test_table_io_sniffs_delimiter(tmp_path):
    assert detect_delimiter("a;b;c\n1;2;3") == ";"
    path = tmp_path / "semi.csv"
    path.write_text("a;b\n1;x\n2;y\n", encoding="utf-8")
    df = read_table(str(path))
    assert list(df.columns) == ["a", "b"]

    out = tmp_path / "out.csv"
    write_table(df, str(out))
    assert out.read_text(encoding="utf-8").splitlines() == ["a,b", "1,x", "2,y"]


def test_read_table_falls_back_to_single_byte_encodings(tmp_path):
    path = tmp_path / "latin.csv"
    path.write_bytes("name,city\nJosé,Zürich\nAnna,Köln\n".encode("latin-1"))

    df = read_table(str(path))
    assert df["name"].tolist() == ["José", "Anna"]
    assert df["city"].tolist() == ["Zürich", "Köln"]
    assert df.attrs["encoding"] == "latin-1"

    utf8 = tmp_path / "utf8.csv"
    utf8.write_text("name\nJosé\n", encoding="utf-8")
    assert read_table(str(utf8)).attrs["encoding"] == "utf-8"
