from kvsync.cli import main

main()
