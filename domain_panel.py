from domainhelper.cli import main
from domainhelper.utils import console


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        console.print(f"\n[bold red]Critical error: {e}[/bold red]")
        # In case of a crash, ensure the cursor is visible
        console.show_cursor(True)
        raise
