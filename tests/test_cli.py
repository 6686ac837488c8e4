import json

import pytest

from spvm import exit_code_for, run_cli


SUM_PROGRAM = (
    "; adds two registers and returns the result\n"
    "mov rax 5\n"
    "mov rbx 5\n"
    "add rcx rax rbx\n"
    "ret rcx\n"
)


class TestExitCodes:
    @pytest.mark.parametrize("value,expected", [(None, 0), (10, 10), (0, 0), ("text", 1)])
    def test_mapping(self, value, expected):
        assert exit_code_for(value) == expected


class TestRunCli:
    def test_file(self, tmp_path):
        path = tmp_path / "sum.asm"
        path.write_text(SUM_PROGRAM, encoding="utf-8")
        assert run_cli([str(path)]) == 10

    def test_literal_source(self, capsys):
        code = run_cli(["-source", 'mov rax "X={}"\nmov rbx 7\nsyscall printf\n'])
        assert code == 0
        assert capsys.readouterr().out == "X=7\n"

    def test_missing_file(self, tmp_path, capsys):
        assert run_cli([str(tmp_path / "absent.asm")]) == 1
        assert "Failed to read" in capsys.readouterr().err

    def test_load_error(self, capsys):
        assert run_cli(["-source", "call nowhere\n"]) == 1
        err = capsys.readouterr().err
        assert err.startswith("UndefinedLabel: Undefined label 'nowhere'")

    def test_load_error_runs_nothing(self, capsys):
        source = 'mov rax "x"\nsyscall printf\ncall nowhere\n'
        assert run_cli(["-source", source]) == 1
        assert capsys.readouterr().out == ""

    def test_runtime_error_traceback(self, capsys):
        assert run_cli(["-source", 'add rax "a" 1\n']) == 1
        err = capsys.readouterr().err
        assert "Traceback (most recent call last):" in err
        assert "TypeMismatch:" in err

    def test_traceback_json(self, capsys):
        assert run_cli(["-source", "--traceback-json", "syscall nope\n"]) == 1
        err = capsys.readouterr().err
        payload = json.loads(err[err.index("{"):])
        assert payload["error"]["type"] == "UnknownSyscall"

    def test_dump_state(self, capsys):
        assert run_cli(["-source", "--dump-state", "mov sp[2] 4\nmov rax 1\n"]) == 0
        out = capsys.readouterr().out
        assert "  rax = 1" in out
        assert "  0..1: 0" in out
        assert "  2: 4" in out

    def test_max_slots(self, capsys):
        assert run_cli(["-source", "--max-slots", "2", "mov sp[2] 4\n"]) == 1
        assert "InvalidAddress" in capsys.readouterr().err

    def test_slots_unbounded_without_max_slots(self):
        assert run_cli(["-source", "mov sp[1048576] 4\nret sp[1048576]\n"]) == 4

    def test_traceback_shows_decoded_instruction(self, capsys):
        assert run_cli(["-source", "mov rax 1\nadd rbx rax   \"a\"  ; bad\n"]) == 1
        err = capsys.readouterr().err
        assert 'pc 1: add rbx rax "a" (step 1, depth 0)' in err
