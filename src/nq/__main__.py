from nq.cli import main

raise SystemExit(main())
