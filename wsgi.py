from thesis_batch import create_app

# factory with the default "development" config
app = create_app("development")

if __name__ == "__main__":
    # Docker entrypoint
    app.run(host="0.0.0.0", port=5000, debug=True)
