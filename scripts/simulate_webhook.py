#!/usr/bin/env python3
"""Interactive CLI that plays the messaging gateway against a running engine."""

import sys
import time
import uuid

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt


class WebhookSimulator:
    """Posts gateway-shaped events to the engine's webhook endpoint."""

    def __init__(self, base_url: str = "http://localhost:8000", tenant_id: str = "demo", phone: str = "5511999990000"):
        """Initialize the simulator."""
        self.base_url = base_url
        self.tenant_id = tenant_id
        self.phone = phone
        self.push_name = "Cliente Teste"
        self.console = Console()
        self.client = httpx.Client(timeout=30.0)

    def start(self) -> None:
        """Start the interactive loop."""
        self.console.print(
            Panel.fit(
                "[bold blue]💬 Convoflow - Webhook Simulator[/bold blue]\n"
                f"Tenant: {self.tenant_id} | Customer: {self.phone}\n"
                "Type a message to send it as the customer.\n"
                "Commands: /operator <text>, /status, /followups, /phone <number>, /help, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]❌ Cannot connect to {self.base_url}. Is the server running?[/red]")
            return

        self.console.print("[green]✅ Connected[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]Customer[/bold cyan]")
                command = user_input.strip()

                if command.lower() in ["/quit", "/exit", "quit", "exit"]:
                    break
                elif command.lower() == "/help":
                    self._show_help()
                elif command.lower() == "/followups":
                    self._run_follow_ups()
                elif command.lower() == "/status":
                    self._post(self._status_event())
                elif command.startswith("/operator "):
                    self._post(self._message_event(command.removeprefix("/operator ").strip(), from_me=True))
                elif command.startswith("/phone "):
                    self.phone = command.removeprefix("/phone ").strip()
                    self.console.print(f"[yellow]📱 Now chatting as {self.phone}[/yellow]")
                elif command:
                    self._post(self._message_event(command))

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]👋 Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        try:
            response = self.client.get(f"{self.base_url}/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def _message_event(self, text: str, from_me: bool = False) -> dict:
        return {
            "event": "messages.upsert",
            "instance": self.tenant_id,
            "data": {
                "key": {"id": uuid.uuid4().hex.upper(), "remoteJid": f"{self.phone}@s.whatsapp.net", "fromMe": from_me},
                "pushName": self.push_name,
                "message": {"conversation": text},
                "messageType": "conversation",
                "messageTimestamp": int(time.time()),
            },
        }

    def _status_event(self) -> dict:
        return {
            "event": "messages.upsert",
            "instance": self.tenant_id,
            "data": {
                "key": {"id": uuid.uuid4().hex.upper(), "remoteJid": f"{self.phone}@s.whatsapp.net", "fromMe": False},
                "status": "READ",
            },
        }

    def _post(self, event: dict) -> None:
        try:
            response = self.client.post(f"{self.base_url}/webhook", params={"tenant_id": self.tenant_id}, json=event)
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return

        if response.status_code == 200:
            self.console.print("[dim]📨 Delivered to the engine (replies go out through the gateway)[/dim]")
        else:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")

    def _run_follow_ups(self) -> None:
        try:
            response = self.client.post(f"{self.base_url}/cron/follow-ups")
        except httpx.HTTPError as e:
            self.console.print(f"[red]❌ Connection error: {e}[/red]")
            return

        if response.status_code != 200:
            self.console.print(f"[red]❌ API Error: {response.status_code} - {response.text}[/red]")
            return

        data = response.json()
        self.console.print(
            Panel(
                f"Sent: [bold]{data['processed']}[/bold]\nFailed: [bold]{data['failed']}[/bold]",
                title="[green]⏰ Follow-up sweep[/green]",
                border_style="green",
            )
        )

    def _show_help(self) -> None:
        help_text = """
[bold]Available Commands:[/bold]
• /operator <text> - Send a message as the business phone (disables the AI)
• /status - Send a status-only update
• /followups - Trigger the follow-up sweep
• /phone <number> - Switch to another customer
• /quit or /exit - Exit

[bold]Tips:[/bold]
• Send several messages quickly to see them grouped into one batch
• Set CRON_TOKEN on the server to require a token for /followups
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]❓ Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the simulator."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"
    tenant_id = sys.argv[2] if len(sys.argv) > 2 else "demo"

    WebhookSimulator(base_url, tenant_id).start()


if __name__ == "__main__":
    main()
