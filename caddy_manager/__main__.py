from caddy_manager.cli import main

raise SystemExit(main())
