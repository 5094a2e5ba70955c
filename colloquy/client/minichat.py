"""Minimal command-line chat client, for testing/debugging the backends.

Conversations are persisted in a JSON file, so you can exit and continue later.

This module also demonstrates how to build a chat front end using `colloquy.client.llmclient`.
"""

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .. import __version__

logger.info(f"Colloquy-minichat version {__version__} starting.")

logger.info("Loading libraries...")
from unpythonic import timer
with timer() as tim:
    import argparse
    import sys
    from typing import Dict, Optional

    from mcpyrate import colorizer

    from unpythonic.env import env

    from . import chattree
    from . import config as client_config
    from . import llmclient
    from .chatstore import PersistentConversationStore
    from .errors import ClientError
logger.info(f"Libraries loaded in {tim.dt:0.6g}s.")
print()

# Where each backend takes the credential that we read from `client_config.api_key_file`.
credential_option_names = {"chatgpt": "api_key",
                           "chatgpt-browser": "access_token",
                           "bing": "user_token"}

def load_credential() -> Optional[str]:
    """Return the contents of the API key file, or `None` if there is no such file."""
    try:
        with open(client_config.api_key_file, "r", encoding="utf-8") as api_key_file:
            return api_key_file.read().strip() or None
    except FileNotFoundError:
        return None

def next_turn_arguments(kind: str, result: env, jailbreak: bool) -> Dict:
    """From the result of a turn, return the `send_message` arguments that continue the conversation."""
    if kind == "bing":
        if jailbreak:
            return {"jailbreak_conversation_id": result.jailbreak_conversation_id,
                    "parent_message_id": result.message_id}
        return {"conversation_id": result.conversation_id,
                "conversation_signature": result.conversation_signature,
                "client_id": result.client_id,
                "invocation_id": result.invocation_id}
    return {"conversation_id": result.conversation_id,
            "parent_message_id": result.message_id}

def minimal_chat_client(kind: str, jailbreak: bool = False) -> None:
    """Minimal chat client, for testing/debugging."""
    store = PersistentConversationStore(client_config.conversation_store_file)
    app_state = store.namespace("minichat")  # what the client was doing at last exit, so that we can continue from there

    client_kwargs = {}
    credential = load_credential()
    if credential is not None:
        client_kwargs[credential_option_names[kind]] = credential
        print(f"{colorizer.Fore.GREEN}{colorizer.Style.BRIGHT}Loaded credential from '{str(client_config.api_key_file)}'.{colorizer.Style.RESET_ALL}")
    else:
        print(f"{colorizer.Fore.YELLOW}{colorizer.Style.BRIGHT}No credential configured.{colorizer.Style.RESET_ALL} Put your API key (or access token, or `_U` cookie) into '{str(client_config.api_key_file)}'.")
    print()

    try:
        client = llmclient.make_client(kind, store=store, **client_kwargs)
    except ClientError as exc:
        print(colorizer.colorize(f"Error ({exc.kind}): {exc}", colorizer.Style.BRIGHT, colorizer.Fore.RED))
        return

    def new_chat_arguments() -> Dict:
        if kind == "bing" and jailbreak:
            return {"jailbreak_conversation_id": True}
        return {}

    saved = app_state.get(kind)
    turn_arguments = saved["turn_arguments"] if saved is not None else new_chat_arguments()
    def save_state() -> None:
        app_state.set(kind, {"turn_arguments": turn_arguments})

    def show_help() -> None:
        print(colorizer.colorize("=" * 80, colorizer.Style.BRIGHT))
        print(f"    colloquy.client.minichat - Minimal chat client. Backend: {kind}{' (jailbreak)' if jailbreak else ''}")
        print()
        print("    Special commands:")
        print("        !new                    - Start new chat")
        print("        !history                - Print a transcript of the current chat branch")
        print("        !help                   - Show this message again")
        print("        !exit                   - Exit chat (also Ctrl+D)")
        print()
        print("    Press Ctrl+C while the AI is replying to cancel the reply.")
        print(colorizer.colorize("=" * 80, colorizer.Style.BRIGHT))
        print()

    def print_message(role: str, text: str) -> None:
        color = colorizer.Fore.GREEN if role == "user" else colorizer.Fore.CYAN
        print(colorizer.colorize(f"{role}:", colorizer.Style.BRIGHT, color))
        print(text)
        print()

    def show_history() -> None:
        # The backends that keep the conversation remotely store nothing locally, unless jailbroken.
        if kind == "bing" and not jailbreak:
            print(colorizer.colorize("!history: this backend keeps the conversation remotely; nothing to show.", colorizer.Style.BRIGHT))
            print()
            return
        conversation_key = turn_arguments.get("jailbreak_conversation_id") if kind == "bing" else turn_arguments.get("conversation_id")
        conversation = client.get_conversation(conversation_key) if isinstance(conversation_key, str) else None
        if conversation is None:
            print(colorizer.colorize("!history: no messages yet.", colorizer.Style.BRIGHT))
            print()
            return
        if "title" in conversation:
            print(colorizer.colorize(f"[{conversation['title']}]", colorizer.Style.BRIGHT))
            print()
        for message in chattree.linearize(conversation["messages"], turn_arguments.get("parent_message_id")):
            print_message(message["role"], message["text"])

    def on_progress(delta) -> None:
        if delta is llmclient.end_of_stream:
            print()
            return
        print(delta, end="")
        sys.stdout.flush()

    print(colorizer.colorize("Starting chat.", colorizer.Style.BRIGHT))
    print()
    show_help()
    try:
        while True:
            text = input(colorizer.colorize("user: ", colorizer.Style.BRIGHT, colorizer.Fore.GREEN)).strip()
            print()
            if not text:
                continue
            if text == "!exit":
                break
            if text == "!help":
                show_help()
                continue
            if text == "!history":
                show_history()
                continue
            if text == "!new":
                turn_arguments = new_chat_arguments()
                save_state()
                print(colorizer.colorize("Starting new chat session.", colorizer.Style.BRIGHT))
                print()
                continue

            is_new_chat = "conversation_id" not in turn_arguments and "parent_message_id" not in turn_arguments
            kwargs = dict(turn_arguments)
            if kind in ("chatgpt", "chatgpt-browser") and is_new_chat:
                kwargs["should_generate_title"] = True

            print(colorizer.colorize(f"{kind}:", colorizer.Style.BRIGHT, colorizer.Fore.CYAN))
            with timer() as tim:
                reply_stream = client.stream_message(text, **kwargs)
                try:
                    for delta in reply_stream:
                        on_progress(delta)
                except KeyboardInterrupt:
                    reply_stream.cancel()
                try:
                    result = reply_stream.result()
                except ClientError as exc:
                    print()
                    print(colorizer.colorize(f"Error ({exc.kind}): {exc}", colorizer.Style.BRIGHT, colorizer.Fore.RED))
                    print()
                    continue
            on_progress(llmclient.end_of_stream)
            print(colorizer.colorize(f"[{len(result.text)} chars, {tim.dt:0.2f}s]", colorizer.Style.DIM))
            title = getattr(result, "title", None)
            if title:
                print(colorizer.colorize(f"[Title: {title}]", colorizer.Style.DIM))
            print()

            turn_arguments = next_turn_arguments(kind, result, jailbreak)
            save_state()

    except (EOFError, KeyboardInterrupt):
        print()
    print(colorizer.colorize("Exiting chat.", colorizer.Style.BRIGHT))
    print()

def main() -> None:
    parser = argparse.ArgumentParser(description="""Minimal chat client, for testing/debugging the backends.""",
                                     formatter_class=argparse.RawDescriptionHelpFormatter)

    parser.add_argument('-v', '--version', action='version', version=('%(prog)s ' + __version__))
    parser.add_argument(dest="kind", nargs="?", default="chatgpt", choices=sorted(llmclient.backends.keys()), type=str, metavar="backend", help=f"which backend to chat with; one of {', '.join(sorted(llmclient.backends.keys()))} (default 'chatgpt')")
    parser.add_argument("-j", "--jailbreak", dest="jailbreak", action="store_true", default=False, help="bing only: keep the conversation locally, and inject it as context each turn")
    opts = parser.parse_args()

    minimal_chat_client(opts.kind, jailbreak=opts.jailbreak)

if __name__ == "__main__":
    main()
