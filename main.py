from cosmo_engine.demo import main

if __name__ == "__main__":
    main()
