from samsync.cli import main


raise SystemExit(main())
