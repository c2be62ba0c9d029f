from genprune.cli import main

raise SystemExit(main())
