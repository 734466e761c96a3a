"""Tests for the chainable, lazily started front end."""

from __future__ import annotations

import asyncio

import pytest

from conftest import requires_posix_tools

from procpipe import Channel, Command, LifecycleError, SpawnError, StageSpec, run, spawn

pytestmark = requires_posix_tools


def test_chain_starts_once_and_counts_words(ignore_file):
    async def main():
        root = run("cat", [str(ignore_file)])
        last = root.pipe("grep", ["test"]).pipe("sort", ["-r"]).pipe("wc", ["-w"])
        assert not any(command.handle for command in root.chain)
        output = await last.stdout
        await asyncio.wait_for(last.wait(), timeout=10)
        started = [await command.started for command in root.chain]
        return output, started, root.chain

    output, started, chain = asyncio.run(main())

    assert output.decode().strip() == "4"
    assert started == [True, True, True, True]
    assert len({command.handle.pid for command in chain}) == 4


def test_start_from_any_stage_starts_whole_chain():
    async def main():
        root = Command("echo", ["ciao"])
        last = root.pipe("tr", ["a-z", "A-Z"])
        last.start()
        last.start()
        output = await last.stdout
        await last.wait()
        return output, await root.started

    output, root_started = asyncio.run(main())

    assert output == b"CIAO\n"
    assert root_started is True


def test_mutation_after_start_raises():
    async def main():
        command = run("echo", ["ciao"])
        await command.started
        with pytest.raises(LifecycleError, match="after process has started"):
            command.output_to("ignored.txt")
        with pytest.raises(LifecycleError):
            command.pipe("cat")
        await command.stdout
        await command.wait()

    asyncio.run(main())


def test_redirections_on_chain(tmp_path, words_file):
    out_file = tmp_path / "matches.txt"

    async def main():
        root = run("cat").input_from(words_file)
        last = root.pipe("grep", ["engine"]).output_to(out_file)
        stdout = await last.stdout
        code = await last.wait()
        return stdout, code

    stdout, code = asyncio.run(main())

    assert stdout == b""
    assert code == 0
    assert out_file.read_text() == "testing the pipeline engine now\n"


def test_redirect_to_uses_channel_index(tmp_path):
    err_file = tmp_path / "stage.err"

    async def main():
        command = run("sh", ["-c", "printf oops >&2"]).redirect_to(err_file, Channel.STDERR)
        stderr = await command.stderr
        await command.wait()
        return stderr

    stderr = asyncio.run(main())

    assert stderr == b""
    assert err_file.read_bytes() == b"oops"


def test_stdin_writes_are_buffered_until_start():
    async def main():
        root = run("cat")
        root.stdin.write(b"queued before spawn\n")
        root.stdin.close()
        last = root.pipe("wc", ["-l"])
        output = await last.stdout
        await last.wait()
        return output

    assert asyncio.run(main()).decode().strip() == "1"


def test_stderr_accumulates_down_the_chain():
    async def main():
        root = run("sh", ["-c", "printf one >&2; echo data"])
        last = root.pipe("sh", ["-c", "cat >/dev/null; printf two >&2"])
        root_err, last_err = await asyncio.gather(root.stderr, last.stderr)
        await last.wait()
        return root_err, last_err

    root_err, last_err = asyncio.run(main())

    assert root_err == b"one"
    assert sorted(last_err.decode()) == sorted("onetwo")


def test_spawn_failure_is_forwarded_one_hop():
    async def main():
        root = run("procpipe-missing-command")
        middle = root.pipe("cat")
        last = middle.pipe("wc", ["-c"])
        output = await last.stdout
        await last.wait()
        return root, middle, last, output

    root, middle, last, output = asyncio.run(main())

    assert len(root.errors.of_type(SpawnError)) == 1
    assert len(middle.errors.of_type(SpawnError)) == 1
    # Forwarding chains: the last stage sees what its upstream saw.
    assert len(last.errors.of_type(SpawnError)) == 1
    assert root.started.result() is False
    assert root.exit_code.result() is None
    assert middle.started.result() is True
    assert output.decode().strip() == "0"


def test_errors_are_not_broadcast_upstream():
    async def main():
        root = run("echo", ["ciao"])
        last = root.pipe("procpipe-missing-command")
        await last.wait()
        await root.wait()
        return root, last

    root, last = asyncio.run(main())

    assert len(root.errors) == 0
    assert len(last.errors.of_type(SpawnError)) == 1


def test_pipe_onto_existing_command():
    async def main():
        root = run("echo", ["ciao"])
        upper = Command("tr", ["a-z", "A-Z"])
        last = root.pipe(upper)
        assert last is upper
        assert upper.chain == root.chain
        output = await last.stdout
        await last.wait()
        return output

    assert asyncio.run(main()) == b"CIAO\n"


def test_pipe_rejects_second_downstream():
    async def main():
        root = run("echo", ["ciao"])
        downstream = root.pipe("cat")
        with pytest.raises(LifecycleError, match="already piped"):
            root.pipe("cat")
        await asyncio.gather(root.wait(), downstream.wait())

    asyncio.run(main())


def test_pipe_without_end_keeps_downstream_input_open():
    async def main():
        root = run("echo", ["first"])
        last = root.pipe("cat", end=False)
        await root.wait()
        await root.link.wait()
        assert not last.stdin.is_closing()
        last.stdin.write(b"second\n")
        last.stdin.close()
        output = await last.stdout
        await last.wait()
        return output

    assert asyncio.run(main()) == b"first\nsecond\n"


def test_slow_downstream_bounds_buffered_input():
    async def main():
        root = run("yes")
        last = root.pipe("sh", ["-c", "sleep 1; head -c 5"])
        await asyncio.sleep(0.7)
        queued = last.stdin.pending_bytes
        output = await last.stdout
        await asyncio.wait_for(last.wait(), timeout=10)
        upstream = await asyncio.wait_for(root.wait(), timeout=10)
        return queued, last.config, output, upstream

    queued, config, output, upstream = asyncio.run(main())

    assert queued <= config.stream_limit + config.chunk_size
    assert output == b"y\ny\ny"
    assert upstream != 0


def test_custom_spawner_runs_stage_in_chain():
    seen: list[str] = []

    async def shout_spawner(spec, stdio, *, name, config):
        seen.append(name)
        if spec.command == "shout":
            spec = StageSpec("tr", ("a-z", "A-Z"), spec.redirections)
        return await spawn(spec, stdio, name=name, config=config)

    async def main():
        root = run("echo", ["ciao"], config={"spawner": shout_spawner})
        last = root.pipe("shout")
        output = await last.stdout
        await last.wait()
        return output

    assert asyncio.run(main()) == b"CIAO\n"
    assert sorted(seen) == ["1:echo", "2:shout"]
