from .DemoApp import main

main()
