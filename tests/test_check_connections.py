import pytest

from mysqldriver import *


def write(path, name, content):
    (path / name).write_text(content)


def test__parse_directory(tmp_path):
    write(tmp_path, "b.yaml", "- ConnectionName: B\n  Database: b\n")
    write(tmp_path, "a.yml", "- ConnectionName: A\n  Database: a\n")
    write(tmp_path, "empty.yml", "")
    write(tmp_path, "notes.txt", "- ConnectionName: C\n")
    assert parse_directory(str(tmp_path)) == [
        {"ConnectionName": "A", "Database": "a"},
        {"ConnectionName": "B", "Database": "b"}
    ]


def test__parse_directory__with_invalid_file(tmp_path):
    write(tmp_path, "a.yml", "ConnectionName: A\n")
    with pytest.raises(Exception, match="Invalid configuration file a.yml"):
        parse_directory(str(tmp_path))


def test__load_connections(tmp_path):
    write(tmp_path, "a.yml", "- ConnectionName: Sales\n  Database: sales\n- connectionname: Crm\n  Database: crm\n")
    connections = load_connections(str(tmp_path))
    assert list(connections) == ["Sales", "Crm"]
    assert connections["Crm"]["Database"] == "crm"


@pytest.mark.parametrize("content, message", [
    ("- Database: sales\n", "Missing ConnectionName"),
    ("- ConnectionName: ''\n", "Invalid ConnectionName"),
    ("- ConnectionName: Sales\n- ConnectionName: Sales\n", "Duplicate ConnectionName Sales"),
    ("- Sales\n", "Invalid connection")
])
def test__load_connections__with_invalid_connection(tmp_path, content, message):
    write(tmp_path, "a.yml", content)
    with pytest.raises(Exception, match=message):
        load_connections(str(tmp_path))


def test__check_connections(tmp_path, capsys):
    write(tmp_path, "a.yml", (
        "- ConnectionName: Sales\n"
        "  Driver: Mysql\n"
        "  Host: db.example.com\n"
        "  Database: sales\n"
        "  Password: <sales-password>\n"
        "- ConnectionName: Broken\n"
        "  Database: ''\n"
        "- ConnectionName: Balanced\n"
        "  Database: crm\n"
        "  Protocol: roundrobin\n"
    ))
    write(tmp_path, "b.yml", "- ConnectionName: Legacy\n  Driver: Oracle\n  Database: legacy\n")
    errors = check_connections(str(tmp_path))
    assert list(errors) == ["Broken", "Balanced", "Legacy"]
    assert isinstance(errors["Broken"], MissingRequiredProperty)
    assert isinstance(errors["Balanced"], InvalidProtocol)
    assert isinstance(errors["Legacy"], ConfigurationError)
    output = capsys.readouterr().out
    assert "[Valid]    Sales" in output
    assert "[Invalid]  Broken" in output
    assert "[Unknown]  Legacy" in output
    assert "sales-password" not in output


def test__check_connections__without_errors(tmp_path, capsys):
    write(tmp_path, "a.yml", "- ConnectionName: Sales\n  Database: sales\n")
    assert check_connections(str(tmp_path)) == {}
    assert capsys.readouterr().out.endswith("No errors\n")


def test__check_connections__with_invalid_driver(tmp_path, capsys):
    write(tmp_path, "a.yml", (
        "- ConnectionName: Sales\n  Database: sales\n"
        "- ConnectionName: Numbered\n  Driver: 1\n  Database: numbered\n"
        "- ConnectionName: Crm\n  Database: ''\n"
    ))
    errors = check_connections(str(tmp_path))
    assert list(errors) == ["Numbered", "Crm"]
    assert isinstance(errors["Numbered"], ConfigurationError)
    output = capsys.readouterr().out
    assert "[Valid]    Sales" in output
    assert "[Unknown]  Numbered" in output
    assert "[Invalid]  Crm" in output
    assert "Unknown driver 1 in Numbered" in output
