# main.py
import argparse
import asyncio

from runtime.bootstrap import RuntimeConfig, bootstrap
from runtime.loop import ConsoleLoop


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Personal assistant message pipeline (console)")
    p.add_argument("--data-dir", default=None, help="实体登记簿 / 会话状态 / 终端日志的目录")
    p.add_argument("--user-id", default="console", help="控制台消息使用的 user id")
    p.add_argument("--vocabulary", default=None, help="回复词表 yaml 路径")
    p.add_argument("--state-path", default=None, help="会话状态 JSON 文件路径")
    p.add_argument("--vault", default=None, help="Obsidian vault 目录")
    p.add_argument("--no-terminal-log", action="store_false", dest="terminal_log", default=None)
    args = p.parse_args(argv)
    print(
        "[main.py] 🧭 解析到的参数:",
        {
            "data_dir": args.data_dir,
            "user_id": args.user_id,
            "vocabulary": args.vocabulary,
            "state_path": args.state_path,
            "vault": args.vault,
            "terminal_log": args.terminal_log,
        },
    )
    return args


def build_runtime_config(args: argparse.Namespace) -> RuntimeConfig:
    return RuntimeConfig(
        data_dir=args.data_dir,
        state_path=args.state_path,
        vocabulary_path=args.vocabulary,
        vault_path=args.vault,
        terminal_log=args.terminal_log,
    )


def main(argv=None):
    args = parse_args(argv)
    cfg = build_runtime_config(args)
    print("[main.py] 🚀 开始 bootstrap，搭建完整运行时…")
    rt = bootstrap(cfg)
    asyncio.run(ConsoleLoop(rt, user_id=args.user_id).run())
    print("[main.py] 🏁 运行结束。")


if __name__ == "__main__":
    main()
