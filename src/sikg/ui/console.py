"""Rich-powered console output for SIKG."""

from __future__ import annotations

from rich.console import Console as RichConsole
from rich.panel import Panel
from rich.table import Table

from sikg import __version__
from sikg.graph.models import TestImpact


class Console:
    """Terminal output for SIKG using Rich."""

    def __init__(self) -> None:
        self.console = RichConsole()

    def banner(self) -> None:
        self.console.print(
            Panel(
                f"[bold cyan]SIKG[/bold cyan] [dim]v{__version__}[/dim]\n"
                "[dim]Adaptive change-impact graph for regression test selection[/dim]",
                border_style="cyan",
                padding=(1, 2),
            )
        )

    def success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}")

    def error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {message}")

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]![/yellow] {message}")

    def info(self, message: str) -> None:
        self.console.print(f"[blue]i[/blue] {message}")

    def show_stats(self, stats: dict) -> None:
        """Display graph statistics in a table."""
        table = Table(title="Impact Graph Statistics", border_style="cyan")
        table.add_column("Metric", style="bold")
        table.add_column("Count", justify="right", style="cyan")

        table.add_row("Files", str(stats.get("files", 0)))
        table.add_row("Code Elements", str(stats.get("code_elements", 0)))
        table.add_row("Tests", str(stats.get("tests", 0)))
        table.add_row("Total Nodes", str(stats.get("total_nodes", 0)))
        table.add_row("Total Edges", str(stats.get("total_edges", 0)))
        if "skipped_relations" in stats:
            table.add_row("Skipped Relations", str(stats["skipped_relations"]))

        edge_types = stats.get("edge_types", {})
        if edge_types:
            table.add_section()
            for kind, count in sorted(edge_types.items(), key=lambda x: -x[1]):
                table.add_row(f"  {kind} edges", str(count))

        self.console.print(table)

    def show_impacts(
        self,
        impacts: list[TestImpact],
        selected: set[str],
        threshold: float,
    ) -> None:
        """Display ranked test impacts, marking the selected ones."""
        table = Table(
            title=f"Impacted Tests (threshold {threshold:.3f})",
            border_style="cyan",
        )
        table.add_column("#", justify="right", style="dim")
        table.add_column("Test", style="bold")
        table.add_column("Path", style="cyan")
        table.add_column("Impact", justify="right")
        table.add_column("Changes", style="dim")
        table.add_column("Run", justify="center")

        for rank, impact in enumerate(impacts, 1):
            score = impact.impact_score
            color = "red" if score >= 0.7 else "yellow" if score >= 0.3 else "green"
            changes = ", ".join(
                sorted({c.semantic_type.value for c in impact.contributing_changes})
            )
            table.add_row(
                str(rank),
                impact.test_name or impact.test_id,
                impact.test_path,
                f"[{color}]{score:.3f}[/{color}]",
                changes,
                "[green]✓[/green]" if impact.test_id in selected else "",
            )

        self.console.print(table)

    def show_feedback(self, metrics: dict, reward: float, signals: int, weight_updates: int) -> None:
        f1 = metrics.get("f1_score", 0.0)
        color = "green" if f1 >= 0.6 else "yellow" if f1 >= 0.4 else "red"
        self.console.print(
            Panel(
                f"[bold]Precision:[/bold] {metrics.get('precision', 0.0):.3f}\n"
                f"[bold]Recall:[/bold] {metrics.get('recall', 0.0):.3f}\n"
                f"[bold]F1:[/bold] [{color}]{f1:.3f}[/{color}]\n"
                f"[bold]Fault Detection Rate:[/bold] {metrics.get('fault_detection_rate', 0.0):.1%}\n"
                f"[bold]APFD:[/bold] {metrics.get('apfd', 1.0):.3f}\n"
                f"[bold]Reward:[/bold] {reward:.3f}\n"
                f"[bold]Learning Signals:[/bold] {signals}\n"
                f"[bold]Edge Weights Updated:[/bold] {weight_updates}",
                title="[bold]Feedback[/bold]",
                border_style=color,
            )
        )

    def show_policy(self, status: dict) -> None:
        """Display policy parameters, system state and recommendations."""
        policy = status.get("policy_statistics", {})
        table = Table(title="Selection Policy", border_style="cyan")
        table.add_column("Parameter", style="bold")
        table.add_column("Value", justify="right", style="cyan")
        for name, value in policy.get("parameters", {}).items():
            table.add_row(name, f"{value:.3f}")
        table.add_section()
        table.add_row("policy stability", f"{policy.get('current_stability', 0.0):.3f}")
        table.add_row("policy adaptations", str(policy.get("total_adaptations", 0)))
        table.add_row("system stability", f"{status.get('system_stability', 0.0):.3f}")
        table.add_row("average reward", f"{status.get('average_reward', 0.0):.3f}")
        table.add_row("learning rate", f"{status.get('learning_rate', 0.0):.4f}")
        table.add_row("exploration rate", f"{status.get('exploration_rate', 0.0):.3f}")
        table.add_row("enabled", "yes" if status.get("enabled") else "no")
        self.console.print(table)

        recommendations = status.get("recommendations", [])
        if recommendations:
            self.console.print("\n[bold]Recommendations:[/bold]")
            for rec in recommendations:
                self.console.print(f"  • {rec}")
