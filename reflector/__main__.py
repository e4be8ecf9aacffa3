from reflector.cli import distribute_main

distribute_main()
